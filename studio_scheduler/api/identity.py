"""Caller identity for the scheduling API.

Authentication happens upstream; the gateway forwards the caller as
``X-Client-Id`` and ``X-Client-Role`` headers. A middleware or test may set
``request.state.identity`` directly instead.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from studio_scheduler.infra.logging import update_log_context

logger = logging.getLogger(__name__)

CLIENT_ID_HEADER = "X-Client-Id"
CLIENT_ROLE_HEADER = "X-Client-Role"


class Role(str, Enum):
    CLIENT = "client"
    STAFF = "staff"
    ADMIN = "admin"


STAFF_ROLES = {Role.STAFF, Role.ADMIN}


@dataclass
class Identity:
    client_ref: str
    role: Role = Role.CLIENT

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def _parse_role(raw: str | None) -> Role:
    if not raw:
        return Role.CLIENT
    try:
        return Role(raw.strip().lower())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")


async def get_identity(request: Request) -> Identity | None:
    cached: Identity | None = getattr(request.state, "identity", None)
    if cached is not None:
        return cached
    client_ref = (request.headers.get(CLIENT_ID_HEADER) or "").strip()
    if not client_ref:
        return None
    identity = Identity(client_ref=client_ref, role=_parse_role(request.headers.get(CLIENT_ROLE_HEADER)))
    request.state.identity = identity
    update_log_context(client_ref=identity.client_ref, role=identity.role.value)
    return identity


async def require_identity(identity: Identity | None = Depends(get_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return identity


async def require_staff(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_staff:
        logger.info(
            "staff_access_denied",
            extra={"extra": {"client_ref": identity.client_ref, "role": identity.role.value}},
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return identity


def resolve_client_ref(identity: Identity, requested: str | None) -> str:
    """Staff may act for another client; everyone else acts for themselves."""
    if requested and requested != identity.client_ref:
        if not identity.is_staff:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act for another client")
        return requested
    return identity.client_ref
