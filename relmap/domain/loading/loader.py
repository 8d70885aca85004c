"""
Load engine facade: turns one row into a persisted entity graph.

Per row and entity mapping the steps are grouping, lookup configuration,
owning to-one resolution, persistence of the owner and finally
synchronization of the dependent relations. Nothing is committed here.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from relmap.core.config import settings
from relmap.db.introspection import LoadRunCache, SchemaIntrospector
from relmap.db.registry import EntityRegistry
from relmap.domain.loading.exceptions import LoadError
from relmap.domain.loading.grouping import AttributeGrouper, RelationInfo
from relmap.domain.loading.lookup import RelationLookupConfigurator
from relmap.domain.loading.persistence import EntityPersister
from relmap.domain.loading.relations import RelationClassifier, RelationKind
from relmap.domain.loading.resolution import ToOneRelationResolver
from relmap.domain.loading.strategies import SyncContext, strategy_for
from relmap.domain.loading.values import ColumnLengthGuard, ColumnValueResolver
from relmap.domain.mapping.models import EntityMapping, Row, TruncatedFieldRecord
from relmap.domain.mapping.transforms import TransformEngine

logger = logging.getLogger(__name__)


def is_fatal_store_error(exc: BaseException) -> bool:
    """Connection-level failures that must abort the row instead of being isolated."""
    if getattr(exc, "connection_invalidated", False):
        return True
    return isinstance(exc, (OperationalError, InterfaceError, DisconnectionError))


class RelationLoader:
    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        cache: Optional[LoadRunCache] = None,
        transform_engine: Optional[TransformEngine] = None,
        truncate_long_fields: Optional[bool] = None,
        array_warning_size: Optional[int] = None,
    ):
        self.session = session
        self.registry = registry or EntityRegistry()
        self.cache = cache if cache is not None else LoadRunCache()
        self.transform_engine = transform_engine or TransformEngine()
        self.array_warning_size = (
            array_warning_size if array_warning_size is not None else settings.relation_array_warning_size
        )

        self.classifier = RelationClassifier()
        self.introspector = SchemaIntrospector(session, self.cache)
        self.values = ColumnValueResolver(self.transform_engine)
        self.guard = ColumnLengthGuard(
            self.introspector,
            enabled=settings.truncate_long_fields if truncate_long_fields is None else truncate_long_fields,
        )
        self.grouper = AttributeGrouper(
            self.classifier,
            RelationLookupConfigurator(self.introspector),
            self.values,
            self.guard,
        )
        self.persister = EntityPersister(session)
        self.resolver = ToOneRelationResolver(session)

        self.truncated_fields: List[TruncatedFieldRecord] = []
        self.relation_errors: List[Dict[str, Any]] = []

    def reset_caches(self) -> None:
        self.cache.clear()
        self.classifier.clear()

    def load(self, mapping: EntityMapping, row: Row) -> Optional[Any]:
        """
        Load one row for one entity mapping.

        Returns:
            The persisted entity, or None when the duplicate strategy skipped it

        Raises:
            UnknownEntityError, DuplicateRecordError, RelationResolutionError,
            or the store's own error when it cannot be classified
        """
        self.truncated_fields = []
        self.relation_errors = []

        entity_cls = self.registry.resolve(mapping.entity)
        grouped = self.grouper.group(entity_cls, mapping, row)
        self.truncated_fields = list(grouped.truncated)

        context = SyncContext(
            session=self.session,
            persister=self.persister,
            resolver=self.resolver,
            values=self.values,
            duplicate_strategy=mapping.options.duplicate_strategy,
            row_context=row.to_dict(),
            array_warning_size=self.array_warning_size,
        )

        attributes = dict(grouped.attributes)
        for info in grouped.relations.values():
            if info.kind == RelationKind.OWNING_TO_ONE:
                attributes.update(strategy_for(info.kind, context).resolve(info))

        instance = self.persister.persist(entity_cls, attributes, mapping.options)
        if instance is None:
            return None

        for info in grouped.relations.values():
            if info.kind == RelationKind.OWNING_TO_ONE or info.is_empty():
                continue
            self._sync_relation(instance, info, context)

        return instance

    def _sync_relation(self, instance: Any, info: RelationInfo, context: SyncContext) -> None:
        savepoint = self.session.begin_nested()
        try:
            strategy_for(info.kind, context).sync(instance, info)
        except (SQLAlchemyError, LoadError) as exc:
            if is_fatal_store_error(exc):
                raise
            # A failed flush leaves the savepoint deactivated; rollback still closes it.
            savepoint.rollback()
            logger.warning("Relation '%s' of %s not synchronized: %s", info.name, type(instance).__name__, exc)
            self.relation_errors.append({
                "relation": info.name,
                "entity": type(instance).__name__,
                "error": str(exc),
                "type": type(exc).__name__,
            })
            return

        savepoint.commit()
