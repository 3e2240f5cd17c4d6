import os

os.environ.setdefault("WF_STORE_BACKEND", "memory")
os.environ.setdefault("WF_OTEL_ENABLED", "false")
