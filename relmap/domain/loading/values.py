"""
Column value resolution and string length enforcement.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

from relmap.db.introspection import IntrospectionStatus, SchemaIntrospector
from relmap.domain.mapping.models import ColumnMapping, Row, TruncatedFieldRecord, is_missing
from relmap.domain.mapping.transforms import TransformEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedValue:
    """
    A column value after defaults and transforms.

    When a transform turned the value into a list, the transforms that had not
    run yet are kept in ``element_transforms`` so they can be applied to each
    element individually.
    """
    value: Any
    element_transforms: Tuple[str, ...] = ()


class ColumnValueResolver:
    def __init__(self, transform_engine: Optional[TransformEngine] = None):
        self.transform_engine = transform_engine or TransformEngine()

    def resolve(self, column: ColumnMapping, row: Row) -> ResolvedValue:
        if column.is_virtual:
            return ResolvedValue(column.default)

        value = row.get(column.source_column)
        if is_missing(value):
            value = column.default

        context = row.to_dict()
        for position, spec in enumerate(column.transforms):
            value = self.transform_engine.apply_one(value, spec, context)
            if isinstance(value, list):
                return ResolvedValue(value, tuple(column.transforms[position + 1:]))

        return ResolvedValue(value)

    def apply_element_transforms(
        self,
        value: Any,
        transforms: Sequence[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        if not transforms:
            return value
        return self.transform_engine.apply(value, transforms, context)

    def resolve_value(self, column: ColumnMapping, row: Row) -> Any:
        """Resolve and, for list values, apply any remaining transforms element-wise."""
        resolved = self.resolve(column, row)
        if not resolved.element_transforms:
            return resolved.value
        context = row.to_dict()
        return [
            self.apply_element_transforms(element, resolved.element_transforms, context)
            for element in resolved.value
        ]


@dataclass(frozen=True)
class LengthCheck:
    value: Any
    truncated: bool = False
    details: Optional[TruncatedFieldRecord] = None


class ColumnLengthGuard:
    """Truncates strings that exceed the column length of their target attribute."""

    def __init__(self, introspector: SchemaIntrospector, enabled: bool = True):
        self.introspector = introspector
        self.enabled = enabled

    def check(self, entity_cls: type, attribute: str, value: Any, label: Optional[str] = None) -> LengthCheck:
        if not self.enabled or not isinstance(value, str) or value == "":
            return LengthCheck(value)

        result = self.introspector.column_length(entity_cls, attribute)
        if result.status == IntrospectionStatus.UNKNOWN:
            logger.debug("Length of %s.%s unknown; value left as is", entity_cls.__name__, attribute)
            return LengthCheck(value)

        limit = result.limit
        if limit is None or len(value) <= limit:
            return LengthCheck(value)

        details = TruncatedFieldRecord(
            field=label or attribute,
            original_length=len(value),
            max_length=limit,
        )
        logger.info(
            "Truncated %s.%s from %d to %d characters",
            entity_cls.__name__,
            attribute,
            details.original_length,
            limit,
        )
        return LengthCheck(value[:limit], truncated=True, details=details)
