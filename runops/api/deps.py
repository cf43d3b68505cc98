from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, status

from runops.core.auth import Principal
from runops.services.blob import BlobStoreError
from runops.services.repository import (
    RepositoryConflictError,
    RepositoryConstraintError,
    RepositoryNotFoundError,
    RepositorySchemaMissingError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from runops.services.runs import RunBlockedError


def require_org(principal: Principal, scopes: set[str]) -> str:
    try:
        principal.require_scopes(scopes)
        return principal.require_org()
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@contextmanager
def repository_errors() -> Iterator[None]:
    try:
        yield
    except (RepositoryUnavailableError, RepositorySchemaMissingError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RunBlockedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "hard_error_count": exc.summary.hard_error_count,
                "warning_count": exc.summary.warning_count,
                "items": [item.to_stored() | {"run_item_id": item.run_item_id} for item in exc.summary.items],
            },
        ) from exc
    except (RepositoryConflictError, RepositoryConstraintError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except BlobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
