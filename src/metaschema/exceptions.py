"""
Exception classes for metaschema.
"""

from typing import Any, Dict, List, Optional


class MetaschemaError(Exception):
    """Base exception for all metaschema errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        result = self.message
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            result += f" [{details_str}]"
        if self.cause:
            result += f" (caused by: {self.cause})"
        return result


class ConfigurationError(MetaschemaError):
    """Raised when there's an error in configuration."""

    pass


class DatabaseError(MetaschemaError):
    """Raised when there's an error with database operations."""

    pass


class DatabaseConnectionError(DatabaseError):
    """Raised when there's an error establishing or maintaining database connections."""

    pass


class DatabaseConfigurationError(DatabaseError):
    """Raised when there's an error in database configuration."""

    pass


class SchemaError(DatabaseError):
    """Raised when the physical catalog cannot be read."""

    pass


class GovernanceError(MetaschemaError):
    """Base for rejections raised before any database mutation."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.errors = errors or [message]


class ValidationError(GovernanceError):
    """Raised for bad naming, reserved words or missing required input."""

    pass


class UnknownLogicalTypeError(ValidationError):
    """Raised when a logical type has no physical mapping."""

    def __init__(self, logical_type: str, valid_types: List[str]) -> None:
        super().__init__(
            f"Unknown logical type '{logical_type}'. "
            f"Valid types: {', '.join(valid_types)}"
        )
        self.logical_type = logical_type
        self.valid_types = valid_types


class SchemaPermissionError(GovernanceError):
    """Raised when governance denies an operation."""

    pass


class ConflictError(GovernanceError):
    """Raised when a code or physical name is already taken."""

    pass


class NotFoundError(MetaschemaError):
    """Raised when a collection, property or version does not exist."""

    pass


class ExecutionError(MetaschemaError):
    """Raised when DDL fails; carries the statements that did execute."""

    def __init__(
        self,
        message: str,
        executed_statements: Optional[List[str]] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        details = {}
        if executed_statements:
            details["executed"] = len(executed_statements)
        super().__init__(message, details, cause)
        self.executed_statements = executed_statements or []
