"""
Resolution of entity type names to mapped SQLAlchemy classes.

Mappings refer to entity types by name. The registry accepts the class name
(``Book``), the table name (``books``) or the dotted ``module.Class`` path.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import registry as orm_registry

from relmap.domain.loading.exceptions import UnknownEntityError

logger = logging.getLogger(__name__)


class EntityRegistry:
    """Name -> mapped class index over a declarative base (or ORM registry)."""

    def __init__(self, base_or_registry: Union[type, orm_registry, None] = None):
        if base_or_registry is None:
            from relmap.db.session import Base

            base_or_registry = Base

        if isinstance(base_or_registry, orm_registry):
            self._registry = base_or_registry
        else:
            self._registry = base_or_registry.registry

        self._by_name: Dict[str, type] = {}
        self._built_for = -1

    def _classes(self) -> List[type]:
        return [mapper.class_ for mapper in self._registry.mappers]

    def _build_index(self) -> None:
        classes = self._classes()
        # Mapped classes may be declared after the registry was created.
        if len(classes) == self._built_for:
            return

        index: Dict[str, type] = {}
        for cls in classes:
            index[f"{cls.__module__}.{cls.__name__}"] = cls
            table = getattr(cls, "__table__", None)
            if table is not None:
                index.setdefault(table.name, cls)
            if cls.__name__ in index and index[cls.__name__] is not cls:
                logger.warning(
                    "Entity name '%s' is ambiguous; use the dotted module path to disambiguate",
                    cls.__name__,
                )
            index.setdefault(cls.__name__, cls)

        self._by_name = index
        self._built_for = len(classes)

    def find(self, entity_type: Union[str, type]) -> Optional[type]:
        if isinstance(entity_type, type):
            return entity_type if entity_type in self._classes() else None
        self._build_index()
        return self._by_name.get(entity_type.strip())

    def resolve(self, entity_type: Union[str, type]) -> type:
        cls = self.find(entity_type)
        if cls is None:
            raise UnknownEntityError(str(entity_type))
        return cls

    def same_entity(self, left: Union[str, type], right: Union[str, type]) -> bool:
        """True when both names resolve to the same mapped class."""
        left_cls = self.find(left)
        right_cls = self.find(right)
        return left_cls is not None and left_cls is right_cls

    def entity_types(self) -> Iterable[type]:
        return list(self._classes())
