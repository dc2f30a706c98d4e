from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.errors import to_http_exception
from app.core.security import get_human_principal
from app.schemas.admin import KycRecordOut, KycStatus, KycStatusPatchRequest
from app.services.errors import LifecycleError
from app.services.lifecycle import ApplicationLifecycleService, get_lifecycle_service
from app.services.repository import RepositoryError

router = APIRouter()


@router.get("/kyc", response_model=list[KycRecordOut])
async def list_kyc_queue(
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
    kyc_status: KycStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[KycRecordOut]:
    try:
        principal.require_scopes({"kyc:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await service.list_kyc_queue(principal, status=kyc_status, limit=limit, offset=offset)
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return [KycRecordOut(**row) for row in rows]


@router.patch("/employers/{employer_id}/kyc", response_model=KycRecordOut)
async def patch_employer_kyc(
    employer_id: str,
    payload: KycStatusPatchRequest,
    principal=Depends(get_human_principal),
    service: ApplicationLifecycleService = Depends(get_lifecycle_service),
) -> KycRecordOut:
    try:
        principal.require_scopes({"kyc:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await service.set_kyc_status(
            principal,
            employer_id=employer_id,
            status=payload.status,
            reason=payload.reason,
        )
    except (LifecycleError, RepositoryError) as exc:
        raise to_http_exception(exc) from exc

    return KycRecordOut(**row)
