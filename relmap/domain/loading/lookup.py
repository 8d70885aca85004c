"""
Decides how related records are found (and whether they may be created) for
each relation fragment of a mapping.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from relmap.db.introspection import SchemaIntrospector
from relmap.domain.loading.relations import RelationDescriptor, RelationKind
from relmap.domain.mapping.models import ColumnMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LookupConfig:
    field: str
    create_if_missing: bool = False
    delimiter: Optional[str] = None
    explicit: bool = False


class RelationLookupConfigurator:
    def __init__(self, introspector: SchemaIntrospector):
        self.introspector = introspector

    def configure(
        self,
        relation: Optional[RelationDescriptor],
        field: Optional[str],
        column: ColumnMapping,
        create_marker: bool = False,
    ) -> Optional[LookupConfig]:
        """
        Build the lookup for one fragment.

        Args:
            relation: Classified relation, or None when it could not be classified
            field: Mapped related field (None for ``relation.*`` fragments)
            column: Column mapping carrying an optional explicit ``relation_lookup``
            create_marker: True when the field carried the ``+`` suffix

        Returns:
            LookupConfig, or None when no lookup applies to this fragment
        """
        explicit = column.relation_lookup
        if explicit is not None:
            lookup_field = explicit.field or field
            if not lookup_field:
                logger.warning(
                    "relation_lookup on '%s' has no field and the target names none; ignored",
                    column.target_path,
                )
                return None
            return LookupConfig(
                field=lookup_field,
                create_if_missing=explicit.create_if_missing,
                delimiter=explicit.delimiter,
                explicit=True,
            )

        if relation is None or field is None:
            return None

        if relation.kind == RelationKind.OWNING_TO_ONE:
            return LookupConfig(field=field, create_if_missing=create_marker)

        uniqueness = self.introspector.unique_status(relation.related_cls, field)
        if not uniqueness.is_unique:
            logger.debug(
                "%s.%s uniqueness is %s; no lookup for relation '%s'",
                relation.related_cls.__name__,
                field,
                uniqueness.status.value,
                relation.name,
            )
            return None

        if relation.kind == RelationKind.TO_MANY:
            return LookupConfig(field=field, create_if_missing=True)

        return LookupConfig(field=field, create_if_missing=create_marker)
