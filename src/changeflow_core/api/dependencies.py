"""Request-scoped dependencies: caller identity and automation token guard."""
import logging
import secrets
from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from changeflow_core import crud
from changeflow_core.config import Settings, get_settings
from changeflow_core.database import get_db
from changeflow_core.principals import Actor

logger = logging.getLogger("changeflow-core.api.dependencies")


def get_current_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> Actor:
    """
    Resolve the calling user from the X-User-Id header.

    Credential verification happens upstream (gateway / session layer); this
    only maps the authenticated user id onto an Actor with its role.
    """
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user = crud.get_user(db, user_id)
    if not user:
        logger.warning(f"Request with unknown user id {x_user_id}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    return Actor.from_user(user)


def require_automation_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard for /automation/* endpoints: `Authorization: Bearer <AUTOMATION_SECRET>`."""
    secret = settings.automation_secret
    if not secret:
        logger.error("AUTOMATION_SECRET is not configured; rejecting automation request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    expected = f"Bearer {secret}"
    if not authorization or not secrets.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
