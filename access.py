"""Role grants and the role gate decorators used by ledger.TraceChain."""
import functools
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import Unauthorized
from lifecycle import Role
from models import RoleGrant

logger = logging.getLogger("tracechain.access")


class AccessControl:
    def __init__(self, admin: str):
        if not admin:
            raise ValueError("an administrator principal is required")
        self.admin = admin

    def is_admin(self, principal: str) -> bool:
        return principal == self.admin

    def has_role(self, db: Session, principal: str, role: Role) -> bool:
        grant = db.get(RoleGrant, (principal, Role(role).value))
        return bool(grant and grant.granted)

    def roles_of(self, db: Session, principal: str) -> List[Role]:
        rows = db.scalars(
            select(RoleGrant)
            .where(RoleGrant.principal == principal, RoleGrant.granted.is_(True))
            .order_by(RoleGrant.role)
        ).all()
        return [Role(r.role) for r in rows]

    def set_role(self, db: Session, principal: str, role: Role, granted: bool, ts: str) -> RoleGrant:
        """Write a grant row without any authorization check."""
        role = Role(role)
        grant = db.get(RoleGrant, (principal, role.value))
        if grant is None:
            grant = RoleGrant(principal=principal, role=role.value, granted=granted, updated_at=ts)
            db.add(grant)
        else:
            grant.granted = granted
            grant.updated_at = ts
        return grant

    def ensure_admin(self, caller: str, operation: str) -> None:
        if not self.is_admin(caller):
            logger.warning(f"{operation}: rejected non-admin caller '{caller}'")
            raise Unauthorized(f"'{caller}' is not the administrator", operation=operation)

    def ensure_role(self, db: Session, caller: str, role: Role, operation: str) -> None:
        if not self.has_role(db, caller, role):
            logger.warning(f"{operation}: rejected '{caller}' without role {Role(role).value}")
            raise Unauthorized(
                f"'{caller}' lacks role {Role(role).value}", operation=operation
            )


def requires_role(role: Role):
    """Run the wrapped method inside a transaction, only for holders of ``role``.

    Callers use ``method(caller, *args)``; the body is invoked as
    ``fn(self, tx, caller, *args)`` with the open transaction handle.
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self, caller, *args, **kwargs):
            with self.transaction() as tx:
                self.access.ensure_role(tx.db, caller, role, fn.__name__)
                return fn(self, tx, caller, *args, **kwargs)
        return wrapper
    return decorator


def requires_admin(fn):
    @functools.wraps(fn)
    def wrapper(self, caller, *args, **kwargs):
        with self.transaction() as tx:
            self.access.ensure_admin(caller, fn.__name__)
            return fn(self, tx, caller, *args, **kwargs)
    return wrapper
