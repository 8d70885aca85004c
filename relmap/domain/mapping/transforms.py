"""
Named value transforms applied to source values before loading.

A column mapping lists transform specs such as ``"trim"``, ``"cast:int"``,
``"truncate:50"``, ``"regex_replace('\\s+', '-')"`` or
``'concat(first_name, last_name, " ")'``. Specs run in order; every transform
receives the current value and the source row (as a dict) for context.
"""

import hashlib
import html
import json
import logging
import math
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import bcrypt
import pandas as pd

from relmap.utils.date import format_date, parse_flexible_date

logger = logging.getLogger(__name__)

TransformFn = Callable[[Any, Mapping[str, Any]], Any]
TransformFactory = Callable[[str], TransformFn]


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _string_only(fn: Callable[[str], Any]) -> TransformFn:
    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if not isinstance(value, str):
            return value
        return fn(value)

    return transform


def _numeric_only(fn: Callable[[float], Any]) -> TransformFn:
    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        number = _to_number(value)
        if number is None:
            return value
        return fn(number)

    return transform


def _slugify(value: str, separator: str = "-") -> str:
    slug = re.sub(r"[^\w\s-]", "", value.lower())
    slug = re.sub(r"[\s_-]+", separator, slug).strip(separator)
    return slug


def _snake_case(value: str) -> str:
    value = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", value.strip())
    value = re.sub(r"[\s\-]+", "_", value)
    return re.sub(r"_+", "_", value).lower()


def _camel_case(value: str) -> str:
    words = [word for word in re.split(r"[\s_\-]+", value.strip()) if word]
    if not words:
        return ""
    head, *tail = words
    return head[:1].lower() + head[1:] + "".join(word[:1].upper() + word[1:] for word in tail)


def _strip_tags(value: str) -> str:
    return html.unescape(re.sub(r"<[^>]*>", "", value))


def _clean_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def _normalize_multiline(value: str) -> str:
    normalized = value.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    lines = [re.sub(r"[ ]{2,}", " ", line).strip() for line in normalized.split("\n")]
    normalized = "\n".join(lines)
    normalized = re.sub(r"\n{3,}", "\n\n", normalized)
    return normalized.strip()


def _null_if_empty(value: Any, context: Mapping[str, Any]) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


def _json_decode(value: Any, context: Mapping[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def _timestamp(value: Any, context: Mapping[str, Any]) -> Any:
    if value is None or value == "":
        return value
    parsed = parse_flexible_date(value, log_context="timestamp")
    if parsed is None:
        return value
    return int(pd.Timestamp(parsed).timestamp())


BUILTIN_TRANSFORMS: Dict[str, TransformFn] = {
    # String
    "trim": _string_only(str.strip),
    "upper": _string_only(str.upper),
    "lower": _string_only(str.lower),
    "capitalize": _string_only(lambda v: v[:1].upper() + v[1:].lower()),
    "title": _string_only(str.title),
    "slugify": _string_only(_slugify),
    "snake_case": _string_only(_snake_case),
    "camel_case": _string_only(_camel_case),
    "strip_tags": _string_only(_strip_tags),
    "clean_whitespace": _string_only(_clean_whitespace),
    "normalize_multiline": _string_only(_normalize_multiline),
    "null_if_empty": _null_if_empty,
    # Numeric
    "floor": _numeric_only(lambda n: int(math.floor(n))),
    "ceil": _numeric_only(lambda n: int(math.ceil(n))),
    "to_cents": _numeric_only(lambda n: int(round(n * 100))),
    "from_cents": _numeric_only(lambda n: n / 100),
    # Date
    "timestamp": _timestamp,
    "parse_date": lambda value, context: _parse_date(None)(value, context),
    # Utility
    "json_decode": _json_decode,
}


_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}


def _cast(target: str) -> TransformFn:
    target = target.strip().lower()

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or value == "":
            return None
        if target in ("int", "integer"):
            number = _to_number(value)
            return int(number) if number is not None else value
        if target in ("float", "double"):
            number = _to_number(value)
            return number if number is not None else value
        if target in ("bool", "boolean"):
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in _TRUE_STRINGS:
                    return True
                if lowered in _FALSE_STRINGS:
                    return False
            return bool(value)
        if target in ("date", "datetime"):
            return format_date(value, output_format="%Y-%m-%d" if target == "date" else "%Y-%m-%d %H:%M:%S")
        if target == "string":
            return str(value)
        return value

    return transform


def _default(argument: str) -> TransformFn:
    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or value == "":
            return argument
        return value

    return transform


def _coalesce(argument: str) -> TransformFn:
    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return argument
        return value

    return transform


def _hash(argument: str) -> TransformFn:
    algorithm = (argument or "password").strip().lower()

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or value == "":
            return None
        raw = str(value).encode("utf-8")
        if algorithm in ("md5", "sha1", "sha256", "sha512"):
            return hashlib.new(algorithm, raw).hexdigest()
        return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")

    return transform


def _truncate(argument: str) -> TransformFn:
    length_part, has_end, end = argument.partition(":")
    length = int(length_part) if length_part.strip().isdigit() else 255
    end = end if has_end else "..."

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if not isinstance(value, str) or len(value) <= length:
            return value
        return value[:length].rstrip() + end

    return transform


def _prefix(argument: str) -> TransformFn:
    return lambda value, context: value if value is None or value == "" else f"{argument}{value}"


def _suffix(argument: str) -> TransformFn:
    return lambda value, context: value if value is None or value == "" else f"{value}{argument}"


def _round(argument: str) -> TransformFn:
    precision = int(argument) if argument.strip().lstrip("-").isdigit() else 0
    return _numeric_only(lambda n: round(n, precision))


def _multiply(argument: str) -> TransformFn:
    factor = _to_number(argument)
    factor = 1.0 if factor is None else factor
    return _numeric_only(lambda n: n * factor)


def _divide(argument: str) -> TransformFn:
    divisor = _to_number(argument)

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        number = _to_number(value)
        if number is None or not divisor:
            return value
        return number / divisor

    return transform


def _split(argument: str) -> TransformFn:
    delimiter = argument or ","

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if not isinstance(value, str):
            return value
        return [part.strip() for part in value.split(delimiter)]

    return transform


def _parse_date(argument: Optional[str]) -> TransformFn:
    input_format = argument or None

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or value == "":
            return value
        formatted = format_date(value, input_format)
        return formatted if formatted is not None else value

    return transform


def _date_format(argument: str) -> TransformFn:
    output_format = argument or "%Y-%m-%d"

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if value is None or value == "":
            return value
        formatted = format_date(value, output_format=output_format)
        return formatted if formatted is not None else value

    return transform


PARAMETERIZED_TRANSFORMS: Dict[str, TransformFactory] = {
    "cast": _cast,
    "default": _default,
    "coalesce": _coalesce,
    "hash": _hash,
    "truncate": _truncate,
    "prefix": _prefix,
    "suffix": _suffix,
    "round": _round,
    "multiply": _multiply,
    "divide": _divide,
    "split": _split,
    "parse_date": _parse_date,
    "date_format": _date_format,
}


def split_arguments(raw: str) -> List[str]:
    """Split a call argument list on commas, honouring single and double quotes."""
    arguments: List[str] = []
    buffer = ""
    quote: Optional[str] = None

    for char in raw:
        if quote is not None:
            buffer += char
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
            buffer += char
            continue
        if char == ",":
            arguments.append(buffer.strip())
            buffer = ""
            continue
        buffer += char

    if buffer.strip():
        arguments.append(buffer.strip())
    return arguments


def _is_quoted(argument: str) -> bool:
    return len(argument) >= 2 and argument[0] == argument[-1] and argument[0] in ("'", '"')


def _unquote(argument: str) -> str:
    return argument[1:-1] if _is_quoted(argument) else argument


def _concat(raw_arguments: str) -> TransformFn:
    """``concat(first, last, " ")``: unquoted args are row columns, a quoted arg is the separator."""
    fields: List[str] = []
    separator = " "
    for argument in split_arguments(raw_arguments):
        if _is_quoted(argument):
            separator = _unquote(argument)
        else:
            fields.append(argument)

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        parts = []
        for field_name in fields:
            part = context.get(field_name)
            if part is None or part == "" or (isinstance(part, float) and pd.isna(part)):
                continue
            parts.append(str(part))
        return separator.join(parts)

    return transform


def _regex_replace(raw_arguments: str) -> TransformFn:
    arguments = split_arguments(raw_arguments)
    if len(arguments) < 2:
        raise ValueError(f"regex_replace requires a pattern and a replacement: {raw_arguments}")

    pattern = _unquote(arguments[0])
    # Accept /pattern/flags delimiters
    delimited = re.fullmatch(r"/(.*)/([imsx]*)", pattern, re.DOTALL)
    flags = 0
    if delimited:
        pattern = delimited.group(1)
        for flag in delimited.group(2):
            flags |= {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}[flag]

    try:
        compiled = re.compile(pattern, flags)
    except re.error as exc:
        raise ValueError(f"Invalid regex_replace pattern '{pattern}': {exc}") from exc

    replacement = _unquote(arguments[1])
    # $1 style back-references
    replacement = re.sub(r"\$(\d+)", r"\\\1", replacement)

    def transform(value: Any, context: Mapping[str, Any]) -> Any:
        if not isinstance(value, str):
            return value
        return compiled.sub(replacement, value)

    return transform


CALL_TRANSFORMS: Dict[str, TransformFactory] = {
    "concat": _concat,
    "regex_replace": _regex_replace,
}

_CALL_PATTERN = re.compile(r"^(\w+)\((.*)\)$", re.DOTALL)


class TransformEngine:
    """Resolves transform specs and applies them in order."""

    def __init__(self):
        self._custom: Dict[str, TransformFn] = {}
        self._custom_parameterized: Dict[str, TransformFactory] = {}
        self._resolved: Dict[str, TransformFn] = {}

    def register(self, name: str, transform: TransformFn) -> None:
        """Register (or override) a simple transform called as ``name``."""
        self._custom[name] = transform
        self._resolved.clear()

    def register_parameterized(self, name: str, factory: TransformFactory) -> None:
        """Register a transform called as ``name:<argument>``."""
        self._custom_parameterized[name] = factory
        self._resolved.clear()

    def resolve(self, spec: str) -> TransformFn:
        spec = spec.strip()
        if spec in self._resolved:
            return self._resolved[spec]

        transform = self._build(spec)
        self._resolved[spec] = transform
        return transform

    def _build(self, spec: str) -> TransformFn:
        if spec in self._custom:
            return self._custom[spec]

        name, separator, argument = spec.partition(":")
        if separator and name in self._custom_parameterized:
            return self._custom_parameterized[name](argument)

        if spec in BUILTIN_TRANSFORMS:
            return BUILTIN_TRANSFORMS[spec]

        call = _CALL_PATTERN.match(spec)
        if call and call.group(1) in CALL_TRANSFORMS:
            return CALL_TRANSFORMS[call.group(1)](call.group(2))

        if separator and name in PARAMETERIZED_TRANSFORMS:
            return PARAMETERIZED_TRANSFORMS[name](argument)

        raise ValueError(f"Unknown transform: {spec}")

    def apply_one(self, value: Any, spec: str, context: Optional[Mapping[str, Any]] = None) -> Any:
        return self.resolve(spec)(value, context or {})

    def apply(self, value: Any, specs: Sequence[str], context: Optional[Mapping[str, Any]] = None) -> Any:
        result = value
        for spec in specs:
            result = self.apply_one(result, spec, context)
        return result

    def validate_specs(self, specs: Sequence[str]) -> List[str]:
        """Return an error message for every spec that cannot be resolved."""
        errors = []
        for spec in specs:
            try:
                self.resolve(spec)
            except ValueError as exc:
                errors.append(str(exc))
        return errors
