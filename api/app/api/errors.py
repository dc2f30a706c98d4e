from fastapi import HTTPException, status

from app.services.errors import LifecycleError
from app.services.repository import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

_LIFECYCLE_STATUS_BY_KIND = {
    "validation": status.HTTP_422_UNPROCESSABLE_CONTENT,
    "authorization": status.HTTP_403_FORBIDDEN,
    "conflict": status.HTTP_409_CONFLICT,
}


def to_http_exception(exc: LifecycleError | RepositoryError) -> HTTPException:
    if isinstance(exc, LifecycleError):
        return HTTPException(status_code=_LIFECYCLE_STATUS_BY_KIND[exc.kind], detail=exc.to_detail())
    if isinstance(exc, RepositoryUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "persistence_unavailable", "message": str(exc)},
        )
    if isinstance(exc, RepositoryNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, RepositoryValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc))
    if isinstance(exc, RepositoryConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="repository error")
