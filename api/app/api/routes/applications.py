from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.errors import to_http_exception
from app.core.security import get_human_principal
from app.schemas.applications import (
    ActionOut,
    ApplicationCreateRequest,
    ApplicationOut,
    StatusHistoryEntryOut,
    TransitionRequestIn,
)
from app.services.errors import LifecycleError
from app.services.lifecycle import ApplicationLifecycleService, get_lifecycle_service
from app.services.repository import RepositoryError
from app.services.status_graph import ApplicationStatus

router = APIRouter()


@router.post("", response_model=ApplicationOut, status_code=status.HTTP_201_CREATED)
async def create_application(
    payload: ApplicationCreateRequest,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> ApplicationOut:
    try:
        principal.require_scopes({"applications:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.create_application(
            principal,
            internship_id=payload.internship_id,
            cover_letter=payload.cover_letter,
            resume_url=payload.resume_url,
            answers=payload.answers,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return ApplicationOut(**row)


@router.get("", response_model=list[ApplicationOut])
async def list_applications(
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
    internship_id: str | None = Query(default=None, min_length=1),
    application_status: ApplicationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[ApplicationOut]:
    try:
        principal.require_scopes({"applications:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await service.list_applications(
            principal,
            limit=limit,
            offset=offset,
            internship_id=internship_id,
            status=application_status,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return [ApplicationOut(**row) for row in rows]


@router.get("/{application_id}", response_model=ApplicationOut)
async def get_application(
    application_id: str,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> ApplicationOut:
    try:
        principal.require_scopes({"applications:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.get_application(principal, application_id=application_id)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return ApplicationOut(**row)


@router.get("/{application_id}/actions", response_model=list[ActionOut])
async def list_application_actions(
    application_id: str,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> list[ActionOut]:
    try:
        principal.require_scopes({"applications:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        actions = await service.list_allowed_actions(principal, application_id=application_id)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return [ActionOut(**asdict(action)) for action in actions]


@router.get("/{application_id}/history", response_model=list[StatusHistoryEntryOut])
async def list_application_history(
    application_id: str,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[StatusHistoryEntryOut]:
    try:
        principal.require_scopes({"applications:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await service.list_application_history(
            principal,
            application_id=application_id,
            limit=limit,
            offset=offset,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return [StatusHistoryEntryOut(**row) for row in rows]


@router.post("/{application_id}/transitions", response_model=ApplicationOut)
async def transition_application(
    application_id: str,
    payload: TransitionRequestIn,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> ApplicationOut:
    try:
        principal.require_scopes({"applications:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await service.transition_application(
            principal,
            application_id=application_id,
            target_status=payload.target_status,
            interview=payload.interview,
            expected_status=payload.expected_status,
            reason=payload.reason,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return ApplicationOut(**row)
