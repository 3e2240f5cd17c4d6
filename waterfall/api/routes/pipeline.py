from fastapi import APIRouter, Depends, Query

from waterfall.api.deps import get_repository, raise_http_error
from waterfall.core.config import get_settings
from waterfall.schemas.records import PipelineEntry
from waterfall.schemas.triggers import StalledEntry
from waterfall.services.reclaimer import Reclaimer
from waterfall.services.repository import RepositoryError
from waterfall.services.stages import StageTransitionError

router = APIRouter()


@router.get("/stalled", response_model=list[StalledEntry], response_model_by_alias=True)
async def list_stalled(
    limit: int = Query(default=100, ge=1, le=1000),
    repository=Depends(get_repository),
) -> list[StalledEntry]:
    try:
        return await Reclaimer(repository, get_settings()).find_stalled_entries(limit=limit)
    except RepositoryError as exc:
        raise_http_error(exc)


@router.post("/{entry_id}/reset", response_model=PipelineEntry)
async def reset_entry(entry_id: str, repository=Depends(get_repository)) -> PipelineEntry:
    try:
        return await repository.reset_pipeline_entry(entry_id)
    except (RepositoryError, StageTransitionError) as exc:
        raise_http_error(exc)
