"""FastAPI dependencies: services, caller identity and admin checks.

Authentication happens at the gateway, which forwards the caller as
``X-User-Id`` and ``X-User-Role`` headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from services.pipeline import ModerationServices, build_services


@dataclass
class Identity:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_services(request: Request) -> ModerationServices:
    """Return the app's services, building them from settings on first use."""
    if request.app.state.services is None:
        request.app.state.services = build_services()
    return request.app.state.services


def get_identity(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Identity:
    """Raises ``401 Unauthorized`` if the gateway did not identify the caller."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return Identity(user_id=x_user_id.strip(), role=(x_user_role or "user").strip().lower())


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return identity


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
