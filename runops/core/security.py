import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from runops.core.auth import Principal, PrincipalType
from runops.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "member": {"pipeline:read", "pipeline:write"},
    "admin": {"pipeline:read", "pipeline:write", "settings:write"},
}


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

    if not settings.auth_url:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="auth service is not configured",
        )

    user = await _fetch_session_user(
        auth_url=settings.auth_url,
        anon_key=settings.auth_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_metadata_value(user, "role") or "member"
    org_id = _resolve_metadata_value(user, "org_id")

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=ROLE_SCOPES.get(role, ROLE_SCOPES["member"]),
        actor_id=user_id,
        org_id=org_id,
    )


async def require_cron_secret(
    settings: Settings = Depends(get_settings),
    x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
) -> Principal:
    if not settings.cron_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="cron secret is not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject="cron",
        scopes={"cron:run"},
    )


async def _fetch_session_user(
    *,
    auth_url: str,
    anon_key: str | None,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {"Authorization": f"Bearer {token}"}
    if anon_key:
        headers["apikey"] = anon_key
    url = f"{auth_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="auth verification failed",
        )

    return response.json()


def _resolve_metadata_value(user: dict[str, Any], key: str) -> str | None:
    # user_metadata is writable by the user; tenant and role come from app_metadata only.
    metadata = user.get("app_metadata")
    if not isinstance(metadata, dict):
        return None
    value = metadata.get(key)
    return value if isinstance(value, str) and value else None
