from __future__ import annotations

from typing import NamedTuple, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..errors import PermissionDeniedError
from ..models.account import AccountRole
from ..services.container import InkServices


class Identity(NamedTuple):
    """Verified caller, as supplied by the authentication collaborator."""

    account_id: str
    role: AccountRole

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN


def get_services(request: Request) -> InkServices:
    return request.app.state.services


async def get_identity(
    services: InkServices = Depends(get_services),
    x_account_id: Optional[str] = Header(default=None),
    x_account_role: Optional[str] = Header(default=None),
) -> Identity:
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    try:
        role = AccountRole(x_account_role or AccountRole.USER.value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    await services.accounts.ensure_account(account_id, role=role)
    return Identity(account_id=account_id, role=role)


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise PermissionDeniedError("Forbidden")
    return identity
