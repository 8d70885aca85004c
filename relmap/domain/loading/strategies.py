"""
Relation synchronization strategies.

One strategy per relation kind. ``resolve`` runs before the owner is written
(only owning to-one relations do work there); ``sync`` runs after the owner has
been flushed and writes the dependent side.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

from sqlalchemy import and_, insert, select, update
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session

from relmap.db.introspection import primary_key_attributes
from relmap.domain.loading.grouping import RelationInfo, has_values, zip_field_arrays
from relmap.domain.loading.lookup import LookupConfig
from relmap.domain.loading.persistence import (
    EntityPersister,
    assign_attributes,
    build_instance,
    find_or_create,
)
from relmap.domain.loading.relations import RelationDescriptor, RelationKind
from relmap.domain.loading.resolution import ToOneRelationResolver
from relmap.domain.loading.values import ColumnValueResolver
from relmap.domain.mapping.models import DuplicateStrategy, is_missing

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Collaborators and per-row state shared by the strategies of one load."""
    session: Session
    persister: EntityPersister
    resolver: ToOneRelationResolver
    values: ColumnValueResolver
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.ERROR
    row_context: Dict[str, Any] = field(default_factory=dict)
    array_warning_size: int = 1000


def _hashable(value: Any) -> bool:
    return isinstance(value, Hashable) and not is_missing(value)


def lookup_key(value: Any) -> Any:
    """Key used to match lookup values against stored ones (text "7" matches integer 7)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, str)):
        return str(value).strip()
    return value


def prefetch_by_field(
    session: Session,
    entity_cls: type,
    field_name: str,
    values: Iterable[Any],
    scope: Optional[Dict[str, Any]] = None,
) -> Dict[Any, Any]:
    """
    Load every record whose ``field_name`` is one of ``values`` in a single query.

    ``scope`` narrows the candidates with equality filters, e.g. the owner's
    foreign key so only that owner's children are found.
    """
    wanted = list(dict.fromkeys(value for value in values if _hashable(value)))
    if not wanted:
        return {}
    column = getattr(entity_cls, field_name)
    query = session.query(entity_cls).filter(column.in_(wanted))
    if scope:
        query = query.filter_by(**scope)
    return {lookup_key(getattr(row, field_name)): row for row in query.all()}


def attach_related(
    session: Session,
    owner: Any,
    relation: RelationDescriptor,
    links: List[Tuple[Any, Dict[str, Any]]],
) -> int:
    """
    Link ``owner`` to each related record through the join table without
    detaching existing links. New links get their pivot attributes; existing
    links have their pivot attributes updated.

    Returns:
        Number of links inserted
    """
    if not links:
        return 0

    session.flush()
    table = relation.secondary
    owner_pairs, related_pairs = relation.secondary_columns()
    owner_match = {join_col: getattr(owner, attr) for attr, join_col in owner_pairs}
    related_columns = [join_col for _, join_col in related_pairs]
    key_columns = set(owner_match) | set(related_columns)

    wanted: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    for related, pivot in links:
        identity = tuple(getattr(related, attr) for attr, _ in related_pairs)
        clean_pivot = {}
        for name, value in pivot.items():
            if name not in table.c or name in key_columns:
                logger.warning("Join table '%s' has no pivot column '%s'; value ignored", table.name, name)
                continue
            clean_pivot[name] = value
        wanted.setdefault(identity, {}).update(clean_pivot)

    owner_conditions = [table.c[name] == value for name, value in owner_match.items()]
    existing = {
        tuple(row)
        for row in session.execute(
            select(*[table.c[name] for name in related_columns]).where(and_(*owner_conditions))
        )
    }

    inserted = 0
    for identity, pivot in wanted.items():
        related_match = dict(zip(related_columns, identity))
        if identity in existing:
            if pivot:
                session.execute(
                    update(table)
                    .where(and_(*owner_conditions, *[table.c[name] == value for name, value in related_match.items()]))
                    .values(**pivot)
                )
            continue
        session.execute(insert(table).values(**owner_match, **related_match, **pivot))
        inserted += 1

    session.expire(owner, [relation.name])
    return inserted


class RelationStrategy:
    kind: Optional[RelationKind] = None

    def __init__(self, context: SyncContext):
        self.context = context

    def resolve(self, info: RelationInfo) -> Dict[str, Any]:
        """Foreign key attributes to merge into the owner before it is written."""
        return {}

    def sync(self, owner: Any, info: RelationInfo) -> None:
        """Write the dependent side of the relation for a persisted owner."""
        return None

    def _transform_element(self, info: RelationInfo):
        def transform(name: str, value: Any) -> Any:
            transforms = info.field_transforms.get(name, ())
            return self.context.values.apply_element_transforms(value, transforms, self.context.row_context)

        return transform

    def _records(self, info: RelationInfo) -> List[Dict[str, Any]]:
        """Normalize the payload of a relation to a list of attribute dicts."""
        if info.full_array is not None:
            records = []
            for element in info.full_array:
                if isinstance(element, dict):
                    if has_values(element):
                        records.append(dict(element))
                elif info.lookup is not None and not is_missing(element):
                    records.append({info.lookup.field: element})
                else:
                    logger.warning("Relation '%s': skipping non-record element %r", info.name, element)
            self._warn_if_large(info, len(records))
            return records

        if info.field_arrays:
            records = [
                record for record in zip_field_arrays(info, self._transform_element(info)) if has_values(record)
            ]
            self._warn_if_large(info, len(records))
            return records

        return [dict(info.data)] if info.has_data else []

    def _warn_if_large(self, info: RelationInfo, count: int) -> None:
        if count > self.context.array_warning_size:
            logger.warning(
                "Relation '%s' received %d elements (warning threshold %d)",
                info.name,
                count,
                self.context.array_warning_size,
            )

    def _child_foreign_keys(self, owner: Any, relation: RelationDescriptor) -> Dict[str, Any]:
        return {
            related_attr: getattr(owner, owner_attr)
            for owner_attr, related_attr in relation.foreign_key_pairs()
        }


class OwningToOneStrategy(RelationStrategy):
    kind = RelationKind.OWNING_TO_ONE

    def resolve(self, info: RelationInfo) -> Dict[str, Any]:
        return self.context.resolver.resolve(info)


class InverseToOneStrategy(RelationStrategy):
    kind = RelationKind.INVERSE_TO_ONE

    def sync(self, owner: Any, info: RelationInfo) -> None:
        relation = info.relation
        records = self._records(info)
        if not records:
            return
        if len(records) > 1:
            logger.warning("Relation '%s' is to-one; only the first of %d records is written", info.name, len(records))

        data = records[0]
        foreign_keys = self._child_foreign_keys(owner, relation)
        attributes = {**data, **foreign_keys}
        session = self.context.session
        lookup = info.lookup

        if lookup is not None and not is_missing(data.get(lookup.field)):
            match = session.query(relation.related_cls).filter_by(**{lookup.field: data[lookup.field]}).first()
            if match is not None:
                assign_attributes(match, attributes)
                session.flush()
            elif lookup.create_if_missing:
                self.context.persister.create(relation.related_cls, attributes)
            else:
                logger.debug(
                    "No %s with %s=%r for relation '%s'; nothing written",
                    relation.related_cls.__name__, lookup.field, data[lookup.field], info.name,
                )
            return

        existing = session.query(relation.related_cls).filter_by(**foreign_keys).first()
        if existing is not None:
            assign_attributes(existing, attributes)
            session.flush()
        else:
            self.context.persister.create(relation.related_cls, attributes)


class ToManyStrategy(RelationStrategy):
    kind = RelationKind.TO_MANY

    def sync(self, owner: Any, info: RelationInfo) -> None:
        relation = info.relation
        records = self._records(info)
        if not records:
            return

        foreign_keys = self._child_foreign_keys(owner, relation)
        lookup = info.lookup

        if lookup is None:
            for record in records:
                self.context.persister.create(relation.related_cls, {**record, **foreign_keys})
            return

        # Only this owner's children count as lookup hits
        existing = prefetch_by_field(
            self.context.session,
            relation.related_cls,
            lookup.field,
            (record.get(lookup.field) for record in records),
            scope=foreign_keys,
        )
        for record in records:
            value = record.get(lookup.field)
            if is_missing(value):
                logger.debug("Relation '%s': record without %s skipped", info.name, lookup.field)
                continue
            match = existing.get(lookup_key(value)) if _hashable(value) else None
            child = self._write_child(relation, lookup, {**record, **foreign_keys}, match)
            if child is not None and _hashable(value):
                existing[lookup_key(value)] = child

    def _write_child(
        self,
        relation: RelationDescriptor,
        lookup: LookupConfig,
        attributes: Dict[str, Any],
        match: Optional[Any],
    ) -> Optional[Any]:
        if match is None:
            if not lookup.create_if_missing:
                logger.debug(
                    "No %s with %s=%r; create_if_missing is off",
                    relation.related_cls.__name__, lookup.field, attributes.get(lookup.field),
                )
                return None
            return self.context.persister.create(relation.related_cls, attributes)

        return self.context.persister.apply_duplicate_strategy(
            match, attributes, self.context.duplicate_strategy, [lookup.field]
        )


class ManyToManyStrategy(RelationStrategy):
    kind = RelationKind.MANY_TO_MANY

    def _effective_lookup(self, info: RelationInfo) -> Optional[LookupConfig]:
        if info.lookup is not None:
            return info.lookup
        primary_keys = primary_key_attributes(info.relation.related_cls)
        if len(primary_keys) == 1 and (primary_keys[0] in info.data or primary_keys[0] in info.field_arrays):
            return LookupConfig(field=primary_keys[0])
        return None

    def _lookup_records(self, info: RelationInfo, lookup: LookupConfig) -> List[Dict[str, Any]]:
        if info.has_array_payload:
            return self._records(info)

        value = info.data.get(lookup.field)
        if is_missing(value):
            return []
        if isinstance(value, list):
            return [{lookup.field: element} for element in value if not is_missing(element)]

        delimiter = lookup.delimiter
        if delimiter is None and isinstance(value, str) and "," in value:
            primary_keys = primary_key_attributes(info.relation.related_cls)
            delimiter = "," if lookup.field in primary_keys else None
        if delimiter and isinstance(value, str):
            parts = [part.strip() for part in value.split(delimiter)]
            return [{lookup.field: part} for part in parts if part]

        return [dict(info.data)]

    def _pivots(self, info: RelationInfo, count: int) -> List[Dict[str, Any]]:
        """Shared pivot values, or one per record when a pivot value is a list of matching length."""
        pivots = []
        for index in range(count):
            pivot = {}
            for name, value in info.pivot.items():
                if isinstance(value, list):
                    if len(value) == count:
                        pivot[name] = value[index]
                    continue
                pivot[name] = value
            pivots.append(pivot)
        return pivots

    def sync(self, owner: Any, info: RelationInfo) -> None:
        relation = info.relation
        related_cls = relation.related_cls
        lookup = self._effective_lookup(info)

        if lookup is None:
            records = self._records(info)
            related = [self.context.persister.create(related_cls, record) for record in records]
        else:
            records = self._lookup_records(info, lookup)
            related = self._resolve_related(info, lookup, records)

        links = [
            (target, pivot)
            for target, pivot in zip(related, self._pivots(info, len(records)))
            if target is not None
        ]
        attach_related(self.context.session, owner, relation, links)

    def _resolve_related(self, info: RelationInfo, lookup: LookupConfig, records: List[Dict[str, Any]]) -> List[Optional[Any]]:
        related_cls = info.relation.related_cls
        session = self.context.session
        existing = prefetch_by_field(session, related_cls, lookup.field, (record.get(lookup.field) for record in records))

        resolved: List[Optional[Any]] = []
        for record in records:
            value = record.get(lookup.field)
            match = existing.get(lookup_key(value)) if _hashable(value) else None
            if match is None and lookup.create_if_missing and not is_missing(value):
                match, _ = find_or_create(session, related_cls, {lookup.field: value}, attributes=record)
                if _hashable(value):
                    existing[lookup_key(value)] = match
            elif match is None:
                logger.debug("No %s with %s=%r; link skipped", related_cls.__name__, lookup.field, value)
            resolved.append(match)
        return resolved


class UnknownRelationStrategy(RelationStrategy):
    """Best effort for relations that could not be classified."""

    def sync(self, owner: Any, info: RelationInfo) -> None:
        prop = sa_inspect(type(owner)).relationships.get(info.name)
        if prop is None or prop.viewonly:
            logger.warning("%s has no writable relation '%s'; values skipped", type(owner).__name__, info.name)
            return

        records = self._records(info)
        if not records:
            return

        related_cls = prop.mapper.class_
        for record in records:
            instance = build_instance(related_cls, record)
            if prop.uselist:
                getattr(owner, info.name).append(instance)
            else:
                setattr(owner, info.name, instance)
        self.context.session.flush()


STRATEGIES = {
    RelationKind.OWNING_TO_ONE: OwningToOneStrategy,
    RelationKind.INVERSE_TO_ONE: InverseToOneStrategy,
    RelationKind.TO_MANY: ToManyStrategy,
    RelationKind.MANY_TO_MANY: ManyToManyStrategy,
}


def strategy_for(kind: Optional[RelationKind], context: SyncContext) -> RelationStrategy:
    return STRATEGIES.get(kind, UnknownRelationStrategy)(context)
