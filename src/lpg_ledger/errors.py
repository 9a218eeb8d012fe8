"""Exceptions raised by the state store and the helpers that render them.

Record store failures arrive as :class:`~lpg_ledger.data_manager.GatewayError`
instances carrying a machine code. :func:`translate_gateway_error` maps the
well-known codes onto the :class:`StoreError` hierarchy so callers can react to
schema drift, duplicate keys, missing data, or access policy rejections
without inspecting raw codes.
"""

from __future__ import annotations

from typing import Optional

from .constants import GatewayErrorCode
from .data_manager import INVENTORY_UNIQUE_CONSTRAINT, GatewayError


SCHEMA_REPAIR_INSTRUCTION = (
    "The database structure is out of date (a required column is missing). "
    "Run the schema repair procedure from the settings screen, then try again."
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer, sale, expense, or item is unknown."""


class StoreError(Exception):
    """Raised when the record store rejects an operation."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class SchemaDriftError(StoreError):
    """The record store lacks a column the application writes."""


class DuplicateKeyError(StoreError):
    """A unique key, such as a gas cylinder brand and size, already exists."""


class MissingTableError(StoreError):
    """A whole collection is missing from the record store."""


class NotNullViolationError(StoreError):
    """The payload omitted a value the record store requires."""


class PermissionDeniedError(StoreError):
    """The record store's access policy rejected the operation."""


class AdjustmentError(StoreError):
    """One or more inventory adjustments failed after the primary write."""


def _fallback_message(error: GatewayError) -> str:
    for candidate in (error.message, error.details, error.hint):
        if candidate:
            return candidate
    return f"Error Code: {error.code or 'N/A'}"


def translate_gateway_error(error: GatewayError, *, action: str = "") -> StoreError:
    """Map a gateway error onto the matching :class:`StoreError` subclass.

    Args:
        error (GatewayError): Structured error reported by the gateway.
        action (str): Short description of the operation, prefixed to generic
            messages (for example ``"adding sale"``).

    Returns:
        StoreError: Exception instance ready to be raised by the caller.
    """

    code = error.code
    prefix = f"Error {action}: " if action else ""
    if code == GatewayErrorCode.UNDEFINED_COLUMN.value:
        return SchemaDriftError(SCHEMA_REPAIR_INSTRUCTION, code=code)
    if code == GatewayErrorCode.UNIQUE_VIOLATION.value:
        if INVENTORY_UNIQUE_CONSTRAINT in (error.details or "") or INVENTORY_UNIQUE_CONSTRAINT in error.message:
            return DuplicateKeyError(
                "Cannot save: a stock item for this brand and size already exists.",
                code=code,
            )
        return DuplicateKeyError(f"{prefix}{_fallback_message(error)}", code=code)
    if code == GatewayErrorCode.UNDEFINED_TABLE.value:
        return MissingTableError(
            "A data table is missing from the database. Check the database setup.",
            code=code,
        )
    if code == GatewayErrorCode.NOT_NULL_VIOLATION.value:
        return NotNullViolationError(f"Incomplete data: {error.message}", code=code)
    if code == GatewayErrorCode.INSUFFICIENT_PRIVILEGE.value:
        return PermissionDeniedError(
            f"Permission denied by the database access policy: {_fallback_message(error)}",
            code=code,
        )
    return StoreError(f"{prefix}{_fallback_message(error)}", code=code)


def describe_error(error: Optional[BaseException]) -> str:
    """Render any exception raised by the package as user-facing text."""

    if error is None:
        return "An unknown error occurred."
    if isinstance(error, GatewayError):
        return str(translate_gateway_error(error))
    message = str(error)
    if message:
        return message
    return f"An unknown error occurred (type: {type(error).__name__})."


__all__ = [
    "AdjustmentError",
    "BusinessRuleViolation",
    "DuplicateKeyError",
    "MissingReferenceError",
    "MissingTableError",
    "NotNullViolationError",
    "PermissionDeniedError",
    "SCHEMA_REPAIR_INSTRUCTION",
    "SchemaDriftError",
    "StoreError",
    "describe_error",
    "translate_gateway_error",
]
