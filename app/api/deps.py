from fastapi import Depends, Header, HTTPException, status
from typing import Optional
from app.core.audit import Actor
from app.core.config import settings


def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """
    Identity asserted by the upstream identity provider / gateway.
    Authentication happens there; this service only records who acted.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required",
        )
    role = x_actor_role.strip().lower() if x_actor_role else None
    return Actor(x_actor_id.strip(), role)


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Dependency to ensure the caller holds the admin role."""
    if actor.role == settings.ADMIN_ROLE_NAME.lower():
        return actor
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Admin access required"
    )
