from fastapi import APIRouter, Depends, HTTPException, status

from app.api.errors import to_http_exception
from app.core.security import get_human_principal
from app.schemas.postings import PostingCreateRequest, PostingOut
from app.services.errors import LifecycleError
from app.services.lifecycle import ApplicationLifecycleService, get_lifecycle_service
from app.services.repository import RepositoryError

router = APIRouter()


@router.post("", response_model=PostingOut, status_code=status.HTTP_201_CREATED)
async def create_posting(
    payload: PostingCreateRequest,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> PostingOut:
    try:
        principal.require_scopes({"postings:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.create_posting(
            principal,
            title=payload.title,
            description=payload.description,
            application_deadline=payload.application_deadline,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc
    return PostingOut(**row)


@router.get("/{posting_id}", response_model=PostingOut)
async def get_posting(
    posting_id: str,
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> PostingOut:
    try:
        row = await service.get_posting(posting_id=posting_id)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc
    return PostingOut(**row)


@router.post("/{posting_id}/publish", response_model=PostingOut)
async def publish_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> PostingOut:
    try:
        principal.require_scopes({"postings:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.publish_posting(principal, posting_id=posting_id)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc
    return PostingOut(**row)


@router.post("/{posting_id}/close", response_model=PostingOut)
async def close_posting(
    posting_id: str,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> PostingOut:
    try:
        principal.require_scopes({"postings:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.close_posting(principal, posting_id=posting_id)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc
    return PostingOut(**row)
