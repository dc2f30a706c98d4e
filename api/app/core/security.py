from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from app.core.auth import Principal
from app.core.config import Settings, get_settings
from app.services.status_graph import ActorRole

ROLE_SCOPES: dict[ActorRole, set[str]] = {
    ActorRole.STUDENT: {"applications:read", "applications:write"},
    ActorRole.EMPLOYER: {"applications:read", "applications:write", "postings:write"},
    ActorRole.ADMIN: {
        "applications:read",
        "applications:write",
        "postings:write",
        "moderation:write",
        "kyc:write",
    },
}
_ROLE_PRECEDENCE = (ActorRole.ADMIN, ActorRole.EMPLOYER, ActorRole.STUDENT)


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)

    return Principal(
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES[role]),
        actor_id=user_id,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> ActorRole:
    # Roles are only read from app_metadata; user_metadata is user-editable.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return ActorRole.STUDENT

    role = _coerce_role(app_metadata.get("role"))
    if role is not None:
        return role

    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        resolved = {coerced for coerced in (_coerce_role(item) for item in roles) if coerced is not None}
        for candidate in _ROLE_PRECEDENCE:
            if candidate in resolved:
                return candidate

    return ActorRole.STUDENT


def _coerce_role(value: Any) -> ActorRole | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return ActorRole(value.strip().lower())
    except ValueError:
        return None
