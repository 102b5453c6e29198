# Overview: Caller identity, capability lookups and the service-entry guard.

from __future__ import annotations

from dataclasses import dataclass
from functools import wraps

from ..errors import PermissionDeniedError, ValidationError
from .categories import StoreRole
from .definitions import OPERATION_DEFINITIONS, ROLE_CAPABILITIES


@dataclass(frozen=True)
class Actor:
    """Who is calling: user id for attribution, role for the capability check."""
    user_id: int
    role: StoreRole

    @classmethod
    def for_user(cls, user) -> "Actor":
        return cls(user_id=user.id, role=coerce_role(user.role))


def coerce_role(value) -> StoreRole:
    if isinstance(value, StoreRole):
        return value
    try:
        return StoreRole(value)
    except ValueError:
        raise ValidationError(f"Unknown role: {value!r}", {"role": value})


def get_all_operation_codes():
    """Get list of all operation codes."""
    return [op[0] for op in OPERATION_DEFINITIONS]


def get_operation_definition(code):
    """Get full definition for an operation code."""
    for op in OPERATION_DEFINITIONS:
        if op[0] == code:
            return {
                "code": op[0],
                "name": op[1],
                "description": op[2],
                "category": op[3],
            }
    return None


def role_can(role, operation: str) -> bool:
    return operation in ROLE_CAPABILITIES.get(coerce_role(role), frozenset())


def require_capability(operation: str):
    """
    Guard a service operation with the capability table.

    The wrapped function must take a keyword-only `actor` argument. The check
    runs once, before any database work.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            actor = kwargs.get("actor")
            if actor is None:
                raise PermissionDeniedError("anonymous", operation)
            if not role_can(actor.role, operation):
                raise PermissionDeniedError(coerce_role(actor.role).value, operation)
            return f(*args, **kwargs)

        decorated_function.required_capability = operation
        return decorated_function
    return decorator
