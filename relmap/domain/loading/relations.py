"""
Classification of ORM relationships into the four kinds the loader handles.

=================  =====================================  ===================
Kind               SQLAlchemy relationship                Written
=================  =====================================  ===================
OWNING_TO_ONE      many-to-one (FK on the owner)          before the owner
INVERSE_TO_ONE     one-to-many with ``uselist=False``     after the owner
TO_MANY            one-to-many                            after the owner
MANY_TO_MANY       many-to-many through a secondary table after the owner
=================  =====================================  ===================

Unknown names, view-only relationships and unmapped classes classify as None;
callers treat that permissively.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Table
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import RelationshipProperty
from sqlalchemy.orm.interfaces import MANYTOMANY, MANYTOONE, ONETOMANY

logger = logging.getLogger(__name__)


class RelationKind(str, Enum):
    OWNING_TO_ONE = "owning_to_one"
    INVERSE_TO_ONE = "inverse_to_one"
    TO_MANY = "to_many"
    MANY_TO_MANY = "many_to_many"

    @property
    def is_array(self) -> bool:
        return self in (RelationKind.TO_MANY, RelationKind.MANY_TO_MANY)

    @property
    def is_pre_persist(self) -> bool:
        return self == RelationKind.OWNING_TO_ONE


@dataclass(frozen=True)
class RelationDescriptor:
    name: str
    kind: RelationKind
    owner_cls: type
    related_cls: type
    prop: RelationshipProperty

    def foreign_key_pairs(self) -> List[Tuple[str, str]]:
        """
        ``(owner attribute, related attribute)`` pairs joining the two sides.

        For an owning relation the owner attribute is the foreign key; for the
        inverse kinds the related attribute is the child's foreign key.
        """
        owner_mapper = sa_inspect(self.owner_cls)
        related_mapper = sa_inspect(self.related_cls)
        pairs = []
        for local, remote in self.prop.local_remote_pairs:
            if self.kind == RelationKind.MANY_TO_MANY:
                continue
            pairs.append((
                owner_mapper.get_property_by_column(local).key,
                related_mapper.get_property_by_column(remote).key,
            ))
        return pairs

    @property
    def secondary(self) -> Optional[Table]:
        return self.prop.secondary

    def secondary_columns(self) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
        """
        Join-table column pairs for a many-to-many relation.

        Returns ``(owner_pairs, related_pairs)`` where each pair is
        ``(entity attribute, join table column name)``.
        """
        owner_mapper = sa_inspect(self.owner_cls)
        related_mapper = sa_inspect(self.related_cls)
        owner_pairs = [
            (owner_mapper.get_property_by_column(entity_col).key, join_col.name)
            for entity_col, join_col in self.prop.synchronize_pairs
        ]
        related_pairs = [
            (related_mapper.get_property_by_column(entity_col).key, join_col.name)
            for entity_col, join_col in self.prop.secondary_synchronize_pairs
        ]
        return owner_pairs, related_pairs


class RelationClassifier:
    """Looks up and classifies relationships of mapped classes (memoized)."""

    def __init__(self):
        self._cache: Dict[Tuple[type, str], Optional[RelationDescriptor]] = {}

    def describe(self, entity_cls: type, relation_name: str) -> Optional[RelationDescriptor]:
        key = (entity_cls, relation_name)
        if key not in self._cache:
            self._cache[key] = self._describe(entity_cls, relation_name)
        return self._cache[key]

    def _describe(self, entity_cls: type, relation_name: str) -> Optional[RelationDescriptor]:
        try:
            mapper = sa_inspect(entity_cls)
        except NoInspectionAvailable:
            logger.debug("%s is not a mapped class; relation '%s' unclassified", entity_cls, relation_name)
            return None

        prop = mapper.relationships.get(relation_name)
        if prop is None:
            return None
        if prop.viewonly:
            logger.debug("Relation %s.%s is view-only and will not be written", entity_cls.__name__, relation_name)
            return None

        if prop.direction is MANYTOONE:
            kind = RelationKind.OWNING_TO_ONE
        elif prop.direction is ONETOMANY:
            kind = RelationKind.TO_MANY if prop.uselist else RelationKind.INVERSE_TO_ONE
        elif prop.direction is MANYTOMANY:
            kind = RelationKind.MANY_TO_MANY
        else:
            return None

        return RelationDescriptor(
            name=relation_name,
            kind=kind,
            owner_cls=entity_cls,
            related_cls=prop.mapper.class_,
            prop=prop,
        )

    def classify(self, entity_cls: type, relation_name: str) -> Optional[RelationKind]:
        descriptor = self.describe(entity_cls, relation_name)
        return descriptor.kind if descriptor else None

    def related_class(self, entity_cls: type, relation_name: str) -> Optional[type]:
        descriptor = self.describe(entity_cls, relation_name)
        return descriptor.related_cls if descriptor else None

    def clear(self) -> None:
        self._cache.clear()
