"""
Standalone join-table synchronization.

An entity mapping of ``type="pivot_sync"`` with ``relation_path="Book.tags"``
links existing (or newly created) endpoints without writing their attributes.
Column targets are prefixed ``owner.``/``parent.`` (owner lookup fields),
``related.`` (related lookup fields) and ``pivot.``/``pivot_`` (join columns).
"""

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from relmap.db.registry import EntityRegistry
from relmap.domain.loading.persistence import find_or_create
from relmap.domain.loading.relations import RelationClassifier, RelationKind
from relmap.domain.loading.strategies import attach_related
from relmap.domain.loading.values import ColumnValueResolver
from relmap.domain.mapping.models import EntityMapping, Row, is_missing

logger = logging.getLogger(__name__)

OWNER_PREFIXES = ("owner.", "parent.")
RELATED_PREFIXES = ("related.",)
PIVOT_PREFIXES = ("pivot.", "pivot_")


def _split_target(target_path: str) -> Tuple[Optional[str], str]:
    for side, prefixes in (("owner", OWNER_PREFIXES), ("related", RELATED_PREFIXES), ("pivot", PIVOT_PREFIXES)):
        for prefix in prefixes:
            if target_path.startswith(prefix):
                return side, target_path[len(prefix):]
    return None, target_path


class PivotSynchronizer:
    def __init__(
        self,
        session: Session,
        registry: EntityRegistry,
        classifier: RelationClassifier,
        values: ColumnValueResolver,
    ):
        self.session = session
        self.registry = registry
        self.classifier = classifier
        self.values = values

    def sync(self, mapping: EntityMapping, row: Row) -> bool:
        """Link the row's owner and related record. Returns False when nothing was linked."""
        relation_path = mapping.relation_path or ""
        if "." not in relation_path:
            logger.warning("Pivot mapping for '%s' needs relation_path '<Owner>.<relation>'", mapping.entity)
            return False

        owner_name, relation_name = relation_path.split(".", 1)
        owner_cls = self.registry.resolve(owner_name)
        relation = self.classifier.describe(owner_cls, relation_name)
        if relation is None or relation.kind != RelationKind.MANY_TO_MANY:
            logger.warning("'%s' is not a many-to-many relation; pivot sync skipped", relation_path)
            return False

        owner_lookup: Dict[str, Any] = {}
        related_lookup: Dict[str, Any] = {}
        pivot: Dict[str, Any] = {}
        create_owner = False
        create_related = False

        for column in mapping.columns:
            side, field_name = _split_target(column.target_path)
            if side is None:
                logger.debug("Pivot column '%s' has no owner/related/pivot prefix; ignored", column.target_path)
                continue

            value = self.values.resolve_value(column, row)
            create = bool(column.relation_lookup and column.relation_lookup.create_if_missing)
            if side == "owner":
                owner_lookup[field_name] = value
                create_owner = create_owner or create
            elif side == "related":
                related_lookup[field_name] = value
                create_related = create_related or create
            elif not is_missing(value):
                pivot[field_name] = value

        owner = self._endpoint(owner_cls, owner_lookup, create_owner)
        related = self._endpoint(relation.related_cls, related_lookup, create_related)
        if owner is None or related is None:
            logger.debug(
                "Row %s: pivot endpoints missing for %s (owner=%s, related=%s)",
                row.line_number, relation_path, owner_lookup, related_lookup,
            )
            return False

        attach_related(self.session, owner, relation, [(related, pivot)])
        return True

    def _endpoint(self, entity_cls: type, lookup: Dict[str, Any], create: bool) -> Optional[Any]:
        if not lookup or any(is_missing(value) for value in lookup.values()):
            return None
        instance, _ = find_or_create(self.session, entity_cls, lookup, create=create)
        return instance
