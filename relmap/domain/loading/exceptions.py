"""
Error types raised by the load engine.

Everything the engine raises on purpose derives from ``LoadError`` so callers
can tell engine failures from raw store errors (``SQLAlchemyError``), which are
re-raised untouched when they cannot be classified.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class LoadError(Exception):
    """Base class for failures raised by the load engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnknownEntityError(LoadError):
    """Raised when a mapping names an entity type the registry cannot resolve."""

    def __init__(self, entity_type: str, message: Optional[str] = None):
        self.entity_type = entity_type
        super().__init__(message or f"Unknown entity type '{entity_type}'")


class DuplicateRecordError(LoadError):
    """Raised when a unique-key match is found and the duplicate strategy is 'error'."""

    def __init__(
        self,
        entity_type: str,
        unique_key: Sequence[str],
        values: Dict[str, Any],
        message: Optional[str] = None,
    ):
        self.entity_type = entity_type
        self.unique_key = list(unique_key)
        self.values = dict(values)
        rendered = ", ".join(f"{key}={values.get(key)!r}" for key in self.unique_key)
        self.message = message or (
            f"Duplicate {entity_type} record for unique key [{', '.join(self.unique_key)}] ({rendered})"
        )
        super().__init__(self.message)


class RelationErrorKind(str, Enum):
    MISSING_REQUIRED = "missing_required"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY = "foreign_key"
    DATA_TOO_LONG = "data_too_long"
    TYPE_MISMATCH = "type_mismatch"
    UNKNOWN = "unknown"

    @classmethod
    def from_message(cls, message: str) -> "RelationErrorKind":
        """Classify a store error message across SQLite, PostgreSQL and MySQL wording."""
        lowered = message.lower()

        if (
            "doesn't have a default value" in lowered
            or "cannot be null" in lowered
            or "not null constraint" in lowered
            or "violates not-null constraint" in lowered
        ):
            return cls.MISSING_REQUIRED

        if (
            "duplicate entry" in lowered
            or "unique constraint" in lowered
            or "duplicate key value" in lowered
        ):
            return cls.UNIQUE_VIOLATION

        if "foreign key constraint" in lowered:
            return cls.FOREIGN_KEY

        if (
            "data too long" in lowered
            or "string data, right truncated" in lowered
            or "value too long" in lowered
        ):
            return cls.DATA_TOO_LONG

        if "incorrect" in lowered or "invalid" in lowered:
            return cls.TYPE_MISMATCH

        return cls.UNKNOWN


_RELATION_MESSAGES = {
    RelationErrorKind.MISSING_REQUIRED: "The related entity requires additional fields that are not available in the source data.",
    RelationErrorKind.UNIQUE_VIOLATION: "A record with conflicting unique values already exists.",
    RelationErrorKind.FOREIGN_KEY: "Referenced record does not exist.",
    RelationErrorKind.DATA_TOO_LONG: "One or more values exceed the maximum allowed length.",
    RelationErrorKind.TYPE_MISMATCH: "One or more values have an invalid type.",
}


class RelationResolutionError(LoadError):
    """Raised when resolving or creating a related record fails in the store."""

    def __init__(
        self,
        entity_type: str,
        relation_name: str,
        lookup_field: str,
        lookup_value: Any,
        create_if_missing: bool,
        error_kind: RelationErrorKind,
        message: str,
    ):
        self.entity_type = entity_type
        self.relation_name = relation_name
        self.lookup_field = lookup_field
        self.lookup_value = lookup_value
        self.create_if_missing = create_if_missing
        self.error_kind = error_kind
        super().__init__(message)

    @classmethod
    def from_store_error(
        cls,
        exc: BaseException,
        entity_type: str,
        relation_name: str,
        lookup_field: str,
        lookup_value: Any,
        create_if_missing: bool,
    ) -> "RelationResolutionError":
        error_kind = RelationErrorKind.from_message(str(exc))
        base = f"Cannot resolve relation '{relation_name}' (lookup: {lookup_field}={lookup_value})"
        detail = _RELATION_MESSAGES.get(error_kind, str(exc))
        error = cls(
            entity_type,
            relation_name,
            lookup_field,
            lookup_value,
            create_if_missing,
            error_kind,
            f"{base}: {detail}",
        )
        error.__cause__ = exc
        return error

    def suggested_actions(self) -> Dict[str, str]:
        if self.error_kind == RelationErrorKind.MISSING_REQUIRED:
            return {
                "skip": "Skip this row (don't import)",
                "lookup_only": "Only lookup existing records, don't create new ones",
                "continue": "Continue with errors",
            }
        if self.error_kind == RelationErrorKind.UNIQUE_VIOLATION:
            return {
                "skip": "Skip this row",
                "use_existing": "Use the existing related record",
                "continue": "Continue with errors",
            }
        if self.error_kind == RelationErrorKind.DATA_TOO_LONG:
            return {
                "truncate": "Truncate values to fit",
                "skip": "Skip this row",
                "continue": "Continue with errors",
            }
        return {
            "skip": "Skip this row",
            "continue": "Continue with errors",
            "abort": "Abort the import",
        }


class RowValidationError(LoadError):
    """Raised when resolved values fail their column validation rules."""

    def __init__(self, entity_type: str, errors: Dict[str, List[str]], line_number: Optional[int] = None):
        self.entity_type = entity_type
        self.errors = {target: list(messages) for target, messages in errors.items()}
        self.line_number = line_number
        summary = "; ".join(
            f"{target}: {', '.join(messages)}" for target, messages in self.errors.items()
        )
        super().__init__(f"Validation failed for {entity_type}: {summary}")


class CircularDependencyError(LoadError):
    """Raised when entity mappings depend on each other in a cycle."""

    def __init__(self, cycles: List[List[str]]):
        self.cycles = [list(cycle) for cycle in cycles]
        rendered = "; ".join(" -> ".join(cycle) for cycle in self.cycles)
        super().__init__(f"Circular dependencies between mappings: {rendered}")
