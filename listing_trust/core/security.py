import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from listing_trust.core.auth import Principal, PrincipalType
from listing_trust.core.config import Settings, get_settings
from listing_trust.services.errors import UnavailableError
from listing_trust.services.repository import get_repository

OWNER_SCOPES = {"listings:read", "listings:write", "notifications:read"}

ROLE_SCOPES: dict[str, set[str]] = {
    "owner": OWNER_SCOPES,
    "agent": OWNER_SCOPES,
    "vetting_agent": OWNER_SCOPES | {"listings:read_all", "vetting:write"},
    "admin": OWNER_SCOPES
    | {
        "listings:read_all",
        "ml:write",
        "vetting:write",
        "duplicates:write",
        "audit:read",
        "admin:write",
    },
}
ELEVATED_ROLES = {"vetting_agent", "admin"}
ROLE_PRECEDENCE = ("admin", "vetting_agent", "agent", "owner")


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )
    return await _resolve_human_principal(settings=settings, authorization=authorization)


async def get_analyzer_or_human_principal(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if x_api_key and x_module_id:
        principal = await _resolve_machine_principal(repository=repository, module_id=x_module_id, api_key=x_api_key)
        if principal is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")
        return principal
    if authorization and authorization.lower().startswith("bearer "):
        return await _resolve_human_principal(settings=settings, authorization=authorization)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=f"requires bearer token or {settings.api_key_header} and X-Module-Id",
    )


async def _resolve_machine_principal(*, repository: Any, module_id: str, api_key: str) -> Principal | None:
    try:
        credentials = await repository.get_machine_credentials(module_id)
    except UnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    matched = next((record for record in credentials if hmac.compare_digest(record.key_hash, key_hash)), None)
    if not matched:
        return None

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=matched.module_id,
        scopes=set(matched.scopes),
        actor_id=matched.module_db_id,
    )


async def _resolve_human_principal(*, settings: Settings, authorization: str) -> Principal:
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
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["owner"])),
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


def _resolve_human_role(user: dict[str, Any]) -> str:
    # Elevated roles are only trusted from app_metadata, which users cannot edit.
    app_metadata = user.get("app_metadata")
    if isinstance(app_metadata, dict):
        role = app_metadata.get("role")
        if isinstance(role, str) and role in ROLE_SCOPES:
            return role
        roles = app_metadata.get("roles")
        if isinstance(roles, list):
            for candidate in ROLE_PRECEDENCE:
                if candidate in roles:
                    return candidate

    user_metadata = user.get("user_metadata")
    if isinstance(user_metadata, dict):
        role = user_metadata.get("role")
        if isinstance(role, str) and role in ROLE_SCOPES and role not in ELEVATED_ROLES:
            return role

    return "owner"
