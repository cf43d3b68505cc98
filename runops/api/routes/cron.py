from fastapi import APIRouter, Depends, HTTPException, status

from runops.api.deps import repository_errors
from runops.core.config import Settings, get_settings
from runops.core.security import require_cron_secret
from runops.schemas.imports import FreshnessSweepOut
from runops.services.freshness import FreshnessScanner
from runops.services.repository import get_repository

router = APIRouter()


@router.post("/freshness", response_model=FreshnessSweepOut)
async def run_freshness(
    principal=Depends(require_cron_secret),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> FreshnessSweepOut:
    try:
        principal.require_scopes({"cron:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    scanner = FreshnessScanner(
        repository,
        channel=settings.channel,
        stale_after_days=settings.freshness_stale_after_days,
        recent_posting_days=settings.freshness_recent_posting_days,
    )
    with repository_errors():
        summary = await scanner.run()
    return FreshnessSweepOut(message="freshness sweep completed", **summary.as_dict())
