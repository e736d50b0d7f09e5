import secrets

from fastapi import Depends, HTTPException, Request

from .config import Settings, get_settings


def _presented_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.headers.get("x-admin-token") or None


async def require_admin(request: Request, settings: Settings = Depends(get_settings)) -> None:
    """Guard admin endpoints with ADMIN_TOKEN when one is configured."""
    if not settings.admin_token:
        return
    token = _presented_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Admin token required")
    if not secrets.compare_digest(token, settings.admin_token):
        raise HTTPException(status_code=403, detail="Invalid admin token")
