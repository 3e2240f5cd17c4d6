from fastapi import APIRouter, Depends, Query

from waterfall.api.deps import get_repository, raise_http_error
from waterfall.schemas.records import FailureLogEntry
from waterfall.services.repository import RepositoryError

router = APIRouter()


@router.get("", response_model=list[FailureLogEntry])
async def list_failures(
    item_id: str | None = Query(default=None, alias="itemId"),
    limit: int = Query(default=100, ge=1, le=1000),
    repository=Depends(get_repository),
) -> list[FailureLogEntry]:
    try:
        return await repository.list_failures(item_id=item_id, limit=limit)
    except RepositoryError as exc:
        raise_http_error(exc)
