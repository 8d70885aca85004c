"""
Splits the columns of one entity mapping into direct attributes and per-relation
payloads for a single row.

Target path forms handled here:

* ``title``                direct attribute
* ``category.name``        relation field (``+`` suffix: create when missing)
* ``profile.?bio``         optional relation field (null values are dropped)
* ``tags.pivot.weight``    join-table attribute of a many-to-many relation
* ``reviews.*``            whole records for an array relation
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from relmap.domain.loading.lookup import LookupConfig, RelationLookupConfigurator
from relmap.domain.loading.relations import RelationClassifier, RelationDescriptor, RelationKind
from relmap.domain.loading.values import ColumnLengthGuard, ColumnValueResolver
from relmap.domain.mapping.models import (
    CREATE_MARKER,
    FULL_ARRAY_SEGMENT,
    OPTIONAL_MARKER,
    PIVOT_SEGMENT,
    ColumnMapping,
    EntityMapping,
    Row,
    TruncatedFieldRecord,
    is_missing,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    optional: bool = False
    create: bool = False


def parse_field(fragment: str) -> FieldSpec:
    """Strip the ``?`` (optional) prefix and ``+`` (create) suffix from a field fragment."""
    name = fragment.strip()
    optional = name.startswith(OPTIONAL_MARKER)
    if optional:
        name = name[len(OPTIONAL_MARKER):]
    create = name.endswith(CREATE_MARKER)
    if create:
        name = name[: -len(CREATE_MARKER)]
    return FieldSpec(name=name, optional=optional, create=create)


def has_values(record: Dict[str, Any]) -> bool:
    """False when every value of ``record`` is null or blank."""
    return any(not is_missing(value) for value in record.values())


@dataclass(frozen=True)
class RelationInfo:
    name: str
    relation: Optional[RelationDescriptor]
    data: Dict[str, Any]
    lookup: Optional[LookupConfig]
    pivot: Dict[str, Any]
    field_transforms: Dict[str, Tuple[str, ...]]
    full_array: Optional[List[Any]]
    field_arrays: Dict[str, List[Any]]
    fields: Tuple[str, ...]

    @property
    def kind(self) -> Optional[RelationKind]:
        return self.relation.kind if self.relation else None

    @property
    def has_array_payload(self) -> bool:
        return self.full_array is not None or bool(self.field_arrays)

    @property
    def has_data(self) -> bool:
        return has_values(self.data)

    def is_empty(self) -> bool:
        return not self.has_data and not self.pivot and not self.has_array_payload


@dataclass(frozen=True)
class RelationAccumulator:
    """Immutable builder for a ``RelationInfo``; every ``with_*`` returns a new accumulator."""
    name: str
    relation: Optional[RelationDescriptor] = None
    data: Dict[str, Any] = field(default_factory=dict)
    lookup: Optional[LookupConfig] = None
    pivot: Dict[str, Any] = field(default_factory=dict)
    field_transforms: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    full_array: Optional[Tuple[Any, ...]] = None
    field_arrays: Dict[str, Tuple[Any, ...]] = field(default_factory=dict)
    fields: Tuple[str, ...] = ()

    def with_data(self, name: str, value: Any) -> "RelationAccumulator":
        return replace(self, data={**self.data, name: value})

    def with_pivot(self, name: str, value: Any) -> "RelationAccumulator":
        return replace(self, pivot={**self.pivot, name: value})

    def with_lookup(self, lookup: Optional[LookupConfig]) -> "RelationAccumulator":
        # First configured lookup wins; an explicit one replaces an auto-detected one.
        if lookup is None:
            return self
        if self.lookup is None or (lookup.explicit and not self.lookup.explicit):
            return replace(self, lookup=lookup)
        return self

    def with_full_array(self, values: List[Any]) -> "RelationAccumulator":
        return replace(self, full_array=tuple(values))

    def with_field_array(self, name: str, values: List[Any], transforms: Tuple[str, ...] = ()) -> "RelationAccumulator":
        fields = self.fields if name in self.fields else self.fields + (name,)
        updated = replace(self, field_arrays={**self.field_arrays, name: tuple(values)}, fields=fields)
        if transforms:
            updated = replace(updated, field_transforms={**updated.field_transforms, name: tuple(transforms)})
        return updated

    def finalize(self) -> RelationInfo:
        return RelationInfo(
            name=self.name,
            relation=self.relation,
            data=dict(self.data),
            lookup=self.lookup,
            pivot=dict(self.pivot),
            field_transforms=dict(self.field_transforms),
            full_array=list(self.full_array) if self.full_array is not None else None,
            field_arrays={name: list(values) for name, values in self.field_arrays.items()},
            fields=self.fields,
        )


def _key_variants(name: str) -> List[str]:
    parts = [part for part in name.split("_") if part]
    camel = parts[0] + "".join(part.capitalize() for part in parts[1:]) if parts else name
    pascal = "".join(part.capitalize() for part in parts) if parts else name
    return [name, camel, pascal, name.replace("_", "")]


def pick_key(element: Dict[str, Any], name: str) -> Tuple[bool, Any]:
    """Find ``name`` in a dict element, tolerating camelCase/PascalCase/case differences."""
    for variant in _key_variants(name):
        if variant in element:
            return True, element[variant]
    normalized = re.sub(r"[_\s-]", "", name).lower()
    for key, value in element.items():
        if re.sub(r"[_\s-]", "", str(key)).lower() == normalized:
            return True, value
    return False, None


def zip_field_arrays(
    info: RelationInfo,
    transform: Optional[Callable[[str, Any], Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Combine per-field arrays into one record per index.

    The record count is the longest array. A dict element contributes its value
    for the field's key; a scalar element is the field value itself. Null values
    are omitted. Scalar fields in ``info.data`` are shared by every record.
    """
    if not info.field_arrays:
        return []

    count = max(len(values) for values in info.field_arrays.values())
    records: List[Dict[str, Any]] = []
    for index in range(count):
        record = dict(info.data)
        for name in info.fields:
            values = info.field_arrays.get(name, [])
            if index >= len(values):
                continue
            element = values[index]
            if isinstance(element, dict):
                found, element = pick_key(element, name)
                if not found:
                    continue
            if transform is not None:
                element = transform(name, element)
            if is_missing(element):
                continue
            record[name] = element
        records.append(record)
    return records


@dataclass
class GroupedRow:
    attributes: Dict[str, Any]
    relations: Dict[str, RelationInfo]
    truncated: List[TruncatedFieldRecord]


class AttributeGrouper:
    def __init__(
        self,
        classifier: RelationClassifier,
        configurator: RelationLookupConfigurator,
        values: ColumnValueResolver,
        guard: ColumnLengthGuard,
    ):
        self.classifier = classifier
        self.configurator = configurator
        self.values = values
        self.guard = guard

    def group(self, entity_cls: type, mapping: EntityMapping, row: Row) -> GroupedRow:
        attributes: Dict[str, Any] = {}
        accumulators: Dict[str, RelationAccumulator] = {}
        truncated: List[TruncatedFieldRecord] = []

        for column in mapping.columns:
            if not column.is_nested:
                value = self.values.resolve_value(column, row)
                checked = self.guard.check(entity_cls, column.target_path, value)
                if checked.truncated:
                    truncated.append(checked.details)
                attributes[column.target_path] = checked.value
                continue

            relation_name = column.relation_name
            accumulator = accumulators.get(relation_name)
            if accumulator is None:
                accumulator = RelationAccumulator(
                    name=relation_name,
                    relation=self.classifier.describe(entity_cls, relation_name),
                )

            accumulators[relation_name] = self._fold(accumulator, column, row, truncated)

        relations = {name: accumulator.finalize() for name, accumulator in accumulators.items()}
        return GroupedRow(attributes=attributes, relations=relations, truncated=truncated)

    def _fold(
        self,
        accumulator: RelationAccumulator,
        column: ColumnMapping,
        row: Row,
        truncated: List[TruncatedFieldRecord],
    ) -> RelationAccumulator:
        relation = accumulator.relation
        rest = column.path_parts()[1:]

        if rest == [FULL_ARRAY_SEGMENT]:
            accumulator = accumulator.with_lookup(self.configurator.configure(relation, None, column))
            value = self.values.resolve_value(column, row)
            if isinstance(value, dict):
                value = [value]
            if relation is not None and relation.kind.is_array and isinstance(value, list):
                return accumulator.with_full_array(value)
            if not is_missing(value):
                logger.debug(
                    "Ignoring '%s': '*' needs a list value on a to-many or many-to-many relation",
                    column.target_path,
                )
            return accumulator

        if rest[0] == PIVOT_SEGMENT and len(rest) == 2:
            spec = parse_field(rest[1])
            if column.relation_lookup is not None:
                accumulator = accumulator.with_lookup(self.configurator.configure(relation, None, column))
            value = self.values.resolve_value(column, row)
            if spec.optional and is_missing(value):
                return accumulator
            return accumulator.with_pivot(spec.name, value)

        if len(rest) != 1:
            logger.warning("Target path '%s' is nested too deeply; column ignored", column.target_path)
            return accumulator

        spec = parse_field(rest[0])
        accumulator = accumulator.with_lookup(
            self.configurator.configure(relation, spec.name, column, create_marker=spec.create)
        )
        # An explicit lookup field names the related attribute the value is matched on
        field_name = spec.name
        if column.relation_lookup is not None and column.relation_lookup.field:
            field_name = column.relation_lookup.field

        resolved = self.values.resolve(column, row)
        value = resolved.value
        if spec.optional and (is_missing(value) or value == []):
            return accumulator

        if isinstance(value, list):
            if relation is not None and relation.kind.is_array:
                return accumulator.with_field_array(field_name, value, resolved.element_transforms)
            value = [
                self.values.apply_element_transforms(element, resolved.element_transforms, row.to_dict())
                for element in value
            ]
            return accumulator.with_data(field_name, value)

        if relation is not None:
            checked = self.guard.check(
                relation.related_cls, field_name, value, label=f"{accumulator.name}.{field_name}"
            )
            if checked.truncated:
                truncated.append(checked.details)
            value = checked.value

        return accumulator.with_data(field_name, value)
