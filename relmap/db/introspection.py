"""
Schema introspection used by the load engine.

Two questions are asked repeatedly during a run: "how long may this string
column be?" and "is this field unique on that entity?". Both are answered from
mapped ``Column`` metadata first and, for uniqueness, from the live database
inspector as a fallback. Answers are cached in a ``LoadRunCache`` that the
loader owns and clears at the start of every run.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Column, UniqueConstraint
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.types import String

logger = logging.getLogger(__name__)


class IntrospectionStatus(str, Enum):
    BOUNDED = "bounded"
    UNBOUNDED = "unbounded"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ColumnLengthResult:
    status: IntrospectionStatus
    max_length: Optional[int] = None

    @property
    def limit(self) -> Optional[int]:
        """The enforceable limit, or None when there is nothing to enforce."""
        if self.status == IntrospectionStatus.BOUNDED:
            return self.max_length
        return None


UNBOUNDED = ColumnLengthResult(IntrospectionStatus.UNBOUNDED)
UNKNOWN = ColumnLengthResult(IntrospectionStatus.UNKNOWN)


class UniquenessStatus(str, Enum):
    UNIQUE = "unique"
    NOT_UNIQUE = "not_unique"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class UniquenessResult:
    status: UniquenessStatus
    source: Optional[str] = None

    @property
    def is_unique(self) -> bool:
        return self.status == UniquenessStatus.UNIQUE


NOT_UNIQUE = UniquenessResult(UniquenessStatus.NOT_UNIQUE)
UNIQUENESS_UNKNOWN = UniquenessResult(UniquenessStatus.UNKNOWN)


@dataclass
class LoadRunCache:
    """Per-run memo of column lengths and unique-field answers."""
    column_lengths: Dict[Tuple[type, str], ColumnLengthResult] = field(default_factory=dict)
    unique_fields: Dict[Tuple[type, str], UniquenessResult] = field(default_factory=dict)

    def clear(self) -> None:
        self.column_lengths.clear()
        self.unique_fields.clear()


def column_for_attribute(entity_cls: type, attribute: str) -> Optional[Column]:
    """Return the table column behind a mapped attribute, or None."""
    mapper = sa_inspect(entity_cls)
    if attribute not in mapper.column_attrs:
        return None
    columns = mapper.column_attrs[attribute].columns
    if not columns:
        return None
    column = columns[0]
    return column if isinstance(column, Column) else None


def primary_key_attributes(entity_cls: type) -> List[str]:
    mapper = sa_inspect(entity_cls)
    return [mapper.get_property_by_column(column).key for column in mapper.primary_key]


def attribute_names(entity_cls: type) -> List[str]:
    return [attr.key for attr in sa_inspect(entity_cls).column_attrs]


class SchemaIntrospector:
    """Answers column length and uniqueness questions for mapped entity types."""

    def __init__(self, session: Session, cache: Optional[LoadRunCache] = None):
        self.session = session
        self.cache = cache if cache is not None else LoadRunCache()

    def column_length(self, entity_cls: type, attribute: str) -> ColumnLengthResult:
        key = (entity_cls, attribute)
        if key in self.cache.column_lengths:
            return self.cache.column_lengths[key]

        result = self._read_column_length(entity_cls, attribute)
        self.cache.column_lengths[key] = result
        return result

    def _read_column_length(self, entity_cls: type, attribute: str) -> ColumnLengthResult:
        try:
            column = column_for_attribute(entity_cls, attribute)
        except (NoInspectionAvailable, SQLAlchemyError, AttributeError) as exc:
            logger.warning(
                "Could not introspect column length for %s.%s: %s",
                getattr(entity_cls, "__name__", entity_cls),
                attribute,
                exc,
            )
            return UNKNOWN

        if column is None:
            logger.debug(
                "No mapped column for %s.%s; length unknown", entity_cls.__name__, attribute
            )
            return UNKNOWN

        column_type = column.type
        if not isinstance(column_type, String):
            return UNBOUNDED

        length = getattr(column_type, "length", None)
        if not length:
            return UNBOUNDED

        return ColumnLengthResult(IntrospectionStatus.BOUNDED, int(length))

    def is_unique_field(self, entity_cls: type, attribute: str) -> bool:
        return self.unique_status(entity_cls, attribute).is_unique

    def unique_status(self, entity_cls: type, attribute: str) -> UniquenessResult:
        """Whether ``attribute`` is unique on its own; UNKNOWN when it cannot be determined."""
        key = (entity_cls, attribute)
        if key in self.cache.unique_fields:
            return self.cache.unique_fields[key]

        result = self._read_uniqueness(entity_cls, attribute)
        self.cache.unique_fields[key] = result
        return result

    def _read_uniqueness(self, entity_cls: type, attribute: str) -> UniquenessResult:
        try:
            column = column_for_attribute(entity_cls, attribute)
        except (NoInspectionAvailable, SQLAlchemyError, AttributeError) as exc:
            logger.warning("Could not introspect %s.%s for uniqueness: %s", entity_cls, attribute, exc)
            return UNIQUENESS_UNKNOWN

        if column is None:
            logger.debug("No mapped column for %s.%s; uniqueness unknown", entity_cls.__name__, attribute)
            return UNIQUENESS_UNKNOWN

        table = column.table
        if column.primary_key and len(table.primary_key.columns) == 1:
            return UniquenessResult(UniquenessStatus.UNIQUE, "primary_key")
        if column.unique:
            return UniquenessResult(UniquenessStatus.UNIQUE, "column")

        for constraint in table.constraints:
            if isinstance(constraint, UniqueConstraint) and list(constraint.columns.keys()) == [column.name]:
                return UniquenessResult(UniquenessStatus.UNIQUE, "constraint")

        for index in table.indexes:
            if index.unique and [col.name for col in index.columns] == [column.name]:
                return UniquenessResult(UniquenessStatus.UNIQUE, "index")

        return self._unique_in_live_schema(table.name, table.schema, column.name)

    def _unique_in_live_schema(self, table_name: str, schema: Optional[str], column_name: str) -> UniquenessResult:
        try:
            inspector = sa_inspect(self.session.connection())
            if not inspector.has_table(table_name, schema=schema):
                return NOT_UNIQUE

            for constraint in inspector.get_unique_constraints(table_name, schema=schema):
                if constraint.get("column_names") == [column_name]:
                    return UniquenessResult(UniquenessStatus.UNIQUE, "live_constraint")

            for index in inspector.get_indexes(table_name, schema=schema):
                if index.get("unique") and index.get("column_names") == [column_name]:
                    return UniquenessResult(UniquenessStatus.UNIQUE, "live_index")
        except SQLAlchemyError as exc:
            logger.warning(
                "Live uniqueness check failed for %s.%s: %s", table_name, column_name, exc
            )
            return UNIQUENESS_UNKNOWN

        return NOT_UNIQUE
