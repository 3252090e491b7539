"""
Caller identity for the API.

Credentials are issued and checked upstream; the gateway in front of this
service forwards the authenticated user as X-User-Id / X-User-Role headers.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from errors import ApiError, forbidden, unauthorized
from schemas import Role, parse_enum


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Role

    @property
    def is_customer(self) -> bool:
        return self.role == Role.CUSTOMER


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    try:
        user_id = str(uuid.UUID(x_user_id))
    except (TypeError, ValueError, AttributeError):
        raise ApiError(unauthorized())
    role = parse_enum(Role, x_user_role)
    if role is None:
        raise ApiError(unauthorized())
    return Caller(user_id=user_id, role=role)


def require_roles(*roles: Role):
    allowed = frozenset(roles)

    def dependency(caller: Caller = Depends(get_caller)) -> Caller:
        if caller.role not in allowed:
            raise ApiError(forbidden())
        return caller

    return dependency


def ensure_owner(caller: Caller, owner_id: str) -> None:
    """Customers may only see their own records; staff roles see everything."""
    if caller.is_customer and caller.user_id != owner_id:
        raise ApiError(forbidden())


customer_only = require_roles(Role.CUSTOMER)
back_office = require_roles(Role.STAFF, Role.MANAGER, Role.ADMIN)
managers = require_roles(Role.MANAGER, Role.ADMIN)
