from typing import Callable, Dict
from fastapi import Depends, Header, Request, status
import httpx

from storefront.shared.utils import AppException, ForbiddenException, UnauthorizedException, settings


def get_db(request: Request):
    return request.app.mongodb


# --- Auth (token verification is delegated to the auth service) ---
async def get_current_user(request: Request, authorization: str = Header(...)) -> Dict:
    async with httpx.AsyncClient(timeout=settings.AUTH_TIMEOUT_SECONDS) as client:
        try:
            headers = {"Authorization": authorization}
            request_id = getattr(request.state, "request_id", None)
            if request_id:
                headers["X-Request-ID"] = request_id

            response = await client.get(f"{settings.AUTH_SERVICE_URL}/verify", headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.RequestError:
            raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Auth service unavailable")
        except httpx.HTTPStatusError:
            raise UnauthorizedException("Invalid authentication credentials")

    if not data.get("success"):
        raise UnauthorizedException("Invalid token")
    user = data["data"]
    request.state.user = user
    return user


def require_role(*roles: str) -> Callable:
    """Dependency factory: allow the request only for callers holding one of ``roles``."""
    async def check(user: Dict = Depends(get_current_user)) -> Dict:
        if user.get("role") not in roles:
            raise ForbiddenException()
        return user
    return check
