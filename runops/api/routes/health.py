from fastapi import APIRouter, Depends, HTTPException, status

from runops.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(repository=Depends(get_repository)) -> dict[str, str]:
    try:
        async with repository.session() as unit:
            await unit.ping()
    except RepositoryError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"status": "ok", "database": "ok"}
