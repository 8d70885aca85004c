"""
Validation rules for resolved column values.

A column mapping may carry a pipe-separated ``validation_rule`` such as
``"required|email"``, ``"integer|min:1|max:10"``, ``"in:draft,published"``
or ``"regex:^[A-Z]{3}$"``. Any preset name below (``uuid``, ``slug``,
``phone_us``, ...) can be used as a rule on its own.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd

from relmap.domain.mapping.models import EntityMapping, Row, is_missing
from relmap.domain.mapping.transforms import TransformEngine

logger = logging.getLogger(__name__)


# Preset regex patterns for common validations
PRESET_PATTERNS = {
    # Contact & Communication
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "phone": r"^\+?[\d\s\-\.\(\)]{7,20}$",
    "phone_us": r"^(\+?1[\s.-]?)?(\([0-9]{3}\)|[0-9]{3})[\s.-]?[0-9]{3}[\s.-]?[0-9]{4}$",
    "phone_international": r"^\+[1-9]\d{6,14}$",

    # Identifiers & Codes
    "uuid": r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$",
    "postal_code": r"^[A-Za-z0-9\s-]{3,10}$",
    "postal_code_us": r"^\d{5}(-\d{4})?$",
    "isbn": r"^(?:\d{9}[\dXx]|\d{13}|(?:\d{1,5}-){3}[\dXx]|(?:\d{1,5}-){4}\d)$",

    # Web & Network
    "url": r"^https?://[^\s/$.?#].[^\s]*$",
    "domain": r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$",
    "ipv4": r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$",

    # Data Formats
    "date_iso": r"^\d{4}-\d{2}-\d{2}$",
    "time_24h": r"^([01]\d|2[0-3]):([0-5]\d)(:([0-5]\d))?$",
    "hex_color": r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$",
    "slug": r"^[a-z0-9]+(?:-[a-z0-9]+)*$",

    # Business IDs
    "alphanumeric_id": r"^[A-Za-z0-9]+$",
    "sku": r"^[A-Za-z0-9\-_]+$",
}


# Human-readable descriptions for each preset
PRESET_DESCRIPTIONS = {
    "email": "Standard email format (permissive)",
    "phone": "Loose phone number (7-20 digits with any separators)",
    "phone_us": "US phone number format",
    "phone_international": "E.164 international format (+country code)",
    "uuid": "UUID format",
    "postal_code": "Postal code (alphanumeric)",
    "postal_code_us": "US ZIP code (5 or 9 digits)",
    "isbn": "ISBN-10 or ISBN-13",
    "url": "HTTP/HTTPS URL",
    "domain": "Domain name",
    "ipv4": "IPv4 address",
    "date_iso": "ISO 8601 date (YYYY-MM-DD)",
    "time_24h": "24-hour time format (HH:MM or HH:MM:SS)",
    "hex_color": "Hex color code (#RGB or #RRGGBB)",
    "slug": "URL-safe slug (lowercase, hyphens)",
    "alphanumeric_id": "Alphanumeric identifier",
    "sku": "Product SKU (alphanumeric with hyphens/underscores)",
}


def get_preset_pattern(preset_name: str) -> Optional[str]:
    return PRESET_PATTERNS.get(preset_name)


def validate_with_preset(
    value: Any,
    preset_name: str,
    allow_null: bool = True
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Args:
        value: Value to validate
        preset_name: Name of the preset validator
        allow_null: Whether to allow null/empty values

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if allow_null:
            return True, None
        return False, "Value is required"

    pattern = get_preset_pattern(preset_name)
    if pattern is None:
        return False, f"Unknown preset validator: {preset_name}"

    str_val = str(value).strip()
    if not re.match(pattern, str_val):
        description = PRESET_DESCRIPTIONS.get(preset_name)
        return False, f"Value '{str_val}' does not match {description or preset_name} format"
    return True, None


def list_available_presets() -> dict:
    return PRESET_DESCRIPTIONS.copy()


def parse_rule(rule: str) -> List[Tuple[str, Optional[str]]]:
    """
    Split a rule string into ``(name, argument)`` pairs.

    ``regex:`` consumes the remainder of the string so patterns may contain ``|``.
    """
    parsed: List[Tuple[str, Optional[str]]] = []
    remainder = rule.strip()

    while remainder:
        if remainder.startswith("regex:"):
            parsed.append(("regex", remainder[len("regex:"):]))
            break
        token, _, remainder = remainder.partition("|")
        token = token.strip()
        if not token:
            continue
        name, separator, argument = token.partition(":")
        parsed.append((name.strip().lower(), argument if separator else None))

    return parsed


def _is_blank(value: Any) -> bool:
    if is_missing(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple)) and not value:
        return True
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if pd.isna(value) else float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _measure(value: Any) -> Optional[float]:
    """Size used by min/max: numeric value, or length for strings and lists."""
    if isinstance(value, (list, tuple, dict)):
        return float(len(value))
    number = _as_number(value)
    if number is not None:
        return number
    if isinstance(value, str):
        return float(len(value))
    return None


def validate_value(value: Any, rule: str) -> List[str]:
    """Return the failure messages for ``value`` under ``rule`` (empty when valid)."""
    rules = parse_rule(rule)
    names = {name for name, _ in rules}

    if _is_blank(value):
        if "required" in names:
            return ["Value is required"]
        return []

    errors: List[str] = []
    for name, argument in rules:
        if name in ("required", "nullable", "sometimes"):
            continue

        if name == "numeric":
            if _as_number(value) is None:
                errors.append(f"Value '{value}' must be numeric")
        elif name == "integer":
            number = _as_number(value)
            if number is None or not float(number).is_integer():
                errors.append(f"Value '{value}' must be an integer")
        elif name == "string":
            if not isinstance(value, str):
                errors.append(f"Value '{value}' must be a string")
        elif name == "boolean":
            if str(value).strip().lower() not in ("true", "false", "1", "0", "yes", "no", "on", "off"):
                errors.append(f"Value '{value}' must be a boolean")
        elif name in ("min", "max"):
            limit = _as_number(argument) if argument is not None else None
            size = _measure(value)
            if limit is None:
                errors.append(f"Rule '{name}' needs a numeric argument")
            elif size is None:
                errors.append(f"Value '{value}' cannot be compared with {name}:{argument}")
            elif name == "min" and size < limit:
                errors.append(f"Value '{value}' must be at least {argument}")
            elif name == "max" and size > limit:
                errors.append(f"Value '{value}' may not be greater than {argument}")
        elif name == "in":
            allowed = [option.strip() for option in (argument or "").split(",")]
            if str(value).strip() not in allowed:
                errors.append(f"Value '{value}' must be one of: {', '.join(allowed)}")
        elif name == "regex":
            try:
                if not re.search(argument or "", str(value)):
                    errors.append(f"Value '{value}' does not match pattern {argument}")
            except re.error as exc:
                errors.append(f"Invalid regex '{argument}': {exc}")
        elif name == "preset":
            is_valid, message = validate_with_preset(value, argument or "")
            if not is_valid:
                errors.append(message)
        elif name in PRESET_PATTERNS:
            is_valid, message = validate_with_preset(value, name)
            if not is_valid:
                errors.append(message)
        else:
            errors.append(f"Unknown validation rule: {name}")

    return errors


class MappingValidator:
    """Validates the resolved values of one row against an entity mapping."""

    def __init__(self, transform_engine: Optional[TransformEngine] = None):
        self.transform_engine = transform_engine or TransformEngine()

    def _entity_rules(self, entity_cls: Optional[type]) -> Mapping[str, str]:
        rules = getattr(entity_cls, "__validation_rules__", None) if entity_cls is not None else None
        return rules if isinstance(rules, Mapping) else {}

    def validate_row(self, row: Row, mapping: EntityMapping, entity_cls: Optional[type] = None) -> Dict[str, List[str]]:
        """Return ``{target_path: [messages]}`` for failing columns."""
        entity_rules = self._entity_rules(entity_cls)
        context = row.to_dict()
        errors: Dict[str, List[str]] = {}

        for column in mapping.columns:
            rule = column.validation_rule or entity_rules.get(column.target_path)
            if not rule:
                continue

            value = column.default if column.is_virtual else row.get(column.source_column)
            if is_missing(value):
                value = column.default
            if column.transforms:
                value = self.transform_engine.apply(value, column.transforms, context)

            messages = validate_value(value, rule)
            if messages:
                errors.setdefault(column.target_path, []).extend(messages)

        if errors:
            logger.debug("Row %s failed validation for %s: %s", row.line_number, mapping.entity, errors)
        return errors
