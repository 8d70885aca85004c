"""
Row-level error classification: turns an exception into a short ``type`` label
and an actionable ``hint`` for the run summary.
"""

import re
from typing import Dict, List, Optional

from relmap.domain.loading.exceptions import (
    CircularDependencyError,
    DuplicateRecordError,
    RelationErrorKind,
    RelationResolutionError,
    RowValidationError,
    UnknownEntityError,
)


def build_hint(description: str, causes: Optional[List[str]] = None, solutions: Optional[List[str]] = None) -> str:
    lines = [description]
    if causes:
        lines.append("Possible causes:")
        lines.extend(f"  {index}. {cause}" for index, cause in enumerate(causes, start=1))
    if solutions:
        lines.append("Solutions:")
        lines.extend(f"  - {solution}" for solution in solutions)
    return "\n".join(lines)


def _classify_relation_error(exc: RelationResolutionError) -> Dict[str, Optional[str]]:
    if exc.error_kind == RelationErrorKind.MISSING_REQUIRED:
        hint = build_hint(
            f"The related entity for '{exc.relation_name}' requires additional fields that are not mapped.",
            [
                "Make the fields nullable on the related entity",
                "Add the missing columns to your source file",
                "Disable 'create_if_missing' and ensure related records exist",
            ],
        )
    elif exc.error_kind == RelationErrorKind.UNIQUE_VIOLATION:
        hint = build_hint(
            f"A {exc.relation_name} with conflicting values already exists.",
            ["Check for duplicates in source data", "Use update strategy instead of create"],
        )
    elif exc.error_kind == RelationErrorKind.DATA_TOO_LONG:
        hint = build_hint(
            f"Value for {exc.lookup_field}='{exc.lookup_value}' exceeds the maximum column length.",
            [
                "Truncate the value in source data",
                "Add truncate transform (e.g., truncate:255)",
                "Increase the column size",
            ],
        )
    else:
        hint = f"Failed to resolve relation '{exc.relation_name}': {exc.message}"

    return {
        "type": f"Cannot create/lookup related '{exc.relation_name}' ({exc.error_kind.value})",
        "hint": hint,
    }


def _relation_from_fk(column: str) -> Optional[str]:
    return column[:-3] if column.endswith("_id") else None


def classify_message(message: str) -> Dict[str, Optional[str]]:
    """Classify a raw store error message (SQLite, PostgreSQL and MySQL wording)."""
    match = (
        re.search(r"Field '([^']+)' doesn't have a default value", message, re.IGNORECASE)
        or re.search(r"NOT NULL constraint failed: (?:\w+\.)?(\w+)", message, re.IGNORECASE)
        or re.search(r'null value in column "([^"]+)"', message, re.IGNORECASE)
        or re.search(r"Column '([^']+)' cannot be null", message, re.IGNORECASE)
    )
    if match:
        field_name = match.group(1)
        relation_name = _relation_from_fk(field_name)
        if relation_name:
            return {
                "type": f"Relation '{relation_name}' not resolved (missing {field_name})",
                "hint": build_hint(
                    f"The '{relation_name}' relation was not resolved before saving.",
                    [
                        "Lookup field was empty/null in source data",
                        f"'create_if_missing' is enabled but required fields for {relation_name} are not mapped",
                        "Lookup found no matching record and creation is disabled",
                    ],
                    [
                        "Enable 'create_if_missing' (or add '+' to the field) to create missing related records",
                        "Ensure source data has values for the lookup field",
                        "Map all required fields for the related entity",
                    ],
                ),
            }
        return {
            "type": f"Missing required field '{field_name}'",
            "hint": f"The field '{field_name}' is NOT NULL but no value was provided. Check your mapping or add a default value.",
        }

    match = re.search(r"Incorrect integer value: '([^']+)' for column '([^']+)'", message, re.IGNORECASE)
    if match:
        value, column = match.group(1), match.group(2)
        if value.lower() in ("true", "false", "yes", "no", "on", "off"):
            return {
                "type": f"Boolean not cast (column '{column}' received '{value}')",
                "hint": build_hint(
                    f"Column '{column}' expects an integer (0/1) but received a string boolean ('{value}').",
                    solutions=["Add the cast:bool transform to convert boolean strings"],
                ),
            }
        relation_name = _relation_from_fk(column)
        if relation_name:
            return {
                "type": f"FK column received non-ID value ('{column}')",
                "hint": build_hint(
                    f"Column '{column}' expects an integer ID but received '{value}'.",
                    solutions=[
                        f"Map to a relation path (e.g., {relation_name}.name) instead of the ID field",
                        "Enable 'create_if_missing' to auto-create related records",
                    ],
                ),
            }
        return {
            "type": f"Type mismatch (integer column '{column}' received '{value}')",
            "hint": build_hint(
                f"Column '{column}' expects an integer but received a non-numeric value.",
                solutions=["Apply a cast transform (e.g., cast:int)", "Check the source column contains numeric data"],
            ),
        }

    lowered = message.lower()

    if "incorrect datetime value" in lowered or "invalid datetime format" in lowered or "invalid input syntax for type timestamp" in lowered:
        return {
            "type": "Invalid datetime value",
            "hint": build_hint(
                "A date/datetime column received an unparseable value.",
                solutions=["Add a date parser transform (e.g., parse_date or cast:date)", "Check the source date format"],
            ),
        }

    if "duplicate entry" in lowered or "unique constraint" in lowered or "duplicate key value" in lowered:
        return {
            "type": "Duplicate key violation",
            "hint": build_hint(
                "A record with the same unique key already exists.",
                solutions=[
                    "Set duplicate_strategy to 'update' or 'skip' in mapping options",
                    "Check for duplicates in source data",
                ],
            ),
        }

    if "foreign key constraint" in lowered:
        return {
            "type": "Foreign key constraint violation",
            "hint": build_hint(
                "A referenced record does not exist in the related table.",
                solutions=[
                    "Enable 'create_if_missing' to auto-create related records",
                    "Ensure related records exist before importing",
                ],
            ),
        }

    if "data too long" in lowered or "data truncated" in lowered or "value too long" in lowered:
        return {
            "type": "Data too long for column",
            "hint": build_hint(
                "A value exceeds the maximum column length.",
                solutions=["Add a truncate transform (e.g., truncate:255)", "Increase the column size"],
            ),
        }

    if "validation failed" in lowered:
        return {
            "type": "Validation error",
            "hint": "One or more fields failed validation. See the row errors for details.",
        }

    return {"type": "Unhandled error", "hint": None}


def classify_error(exc: BaseException) -> Dict[str, Optional[str]]:
    if isinstance(exc, RelationResolutionError):
        return _classify_relation_error(exc)

    if isinstance(exc, DuplicateRecordError):
        return {
            "type": "Duplicate record",
            "hint": build_hint(
                f"{exc.entity_type} already has a record for [{', '.join(exc.unique_key)}].",
                solutions=["Set duplicate_strategy to 'update' or 'skip' in mapping options"],
            ),
        }

    if isinstance(exc, RowValidationError):
        return {
            "type": "Validation error",
            "hint": "\n".join(
                f"{target}: {'; '.join(messages)}" for target, messages in exc.errors.items()
            ),
        }

    if isinstance(exc, UnknownEntityError):
        return {
            "type": f"Unknown entity '{exc.entity_type}'",
            "hint": "Check the entity name in the mapping (class name, table name or module.Class).",
        }

    if isinstance(exc, CircularDependencyError):
        return {
            "type": "Circular mapping dependency",
            "hint": "Break the cycle by loading one side with a separate pivot_sync mapping.",
        }

    orig = getattr(exc, "orig", None)
    return classify_message(str(orig if orig is not None else exc))
