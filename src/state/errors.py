"""Error variant shared by the store, lifecycle and orchestrators.

Every failure surfaced by the core is a ``ServiceError``; callers branch on
``err.kind`` (and ``err.rule`` for business rules) rather than on the class.
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    BUSINESS_RULE = "business_rule"
    VALIDATION = "validation"
    STORAGE = "storage"


class ServiceError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        rule: Optional[str] = None,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None,
        field: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.rule = rule
        self.entity = entity
        self.entity_id = entity_id
        self.field = field
        self.operation = operation
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        for key in ("rule", "entity", "entity_id", "field", "operation"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.details:
            out["details"] = self.details
        if self.cause is not None:
            out["cause"] = repr(self.cause)
        return out

    def __repr__(self) -> str:
        return f"ServiceError({self.kind.value}, {self.message!r})"


def not_found(entity: str, entity_id: str) -> ServiceError:
    return ServiceError(
        ErrorKind.NOT_FOUND,
        f"{entity} '{entity_id}' not found",
        entity=entity,
        entity_id=entity_id,
    )


def business_rule(rule: str, message: str, **details: Any) -> ServiceError:
    return ServiceError(ErrorKind.BUSINESS_RULE, message, rule=rule, details=details)


def invalid_transition(from_status: str, to_status: str) -> ServiceError:
    return business_rule(
        "invalid_transition",
        f"status transition from '{from_status}' to '{to_status}' is not allowed",
        **{"from": from_status, "to": to_status},
    )


def validation_error(field: str, message: str, value: Any = None) -> ServiceError:
    details = {"value": value} if value is not None else None
    return ServiceError(
        ErrorKind.VALIDATION,
        f"invalid field '{field}': {message}",
        field=field,
        details=details,
    )


def storage_error(operation: str, cause: BaseException) -> ServiceError:
    return ServiceError(
        ErrorKind.STORAGE,
        f"storage failure during {operation}: {cause}",
        operation=operation,
        cause=cause,
    )


def from_pydantic(exc: PydanticValidationError) -> ServiceError:
    """Report the first pydantic error as a field-level validation error."""
    first = exc.errors()[0]
    loc = [str(part) for part in first.get("loc", ())]
    field = ".".join(loc) if loc else "input"
    return validation_error(field, first.get("msg", "invalid value"))


def validate_input(schema: Type[BaseModel], data: Dict[str, Any]) -> BaseModel:
    """Validate ``data`` against ``schema`` before any transaction starts."""
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        raise from_pydantic(exc) from exc
