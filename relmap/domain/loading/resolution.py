"""
Resolution of owning to-one relations (``book.category``) into foreign key
values before the owner itself is written.
"""

import logging
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relmap.domain.loading.exceptions import RelationResolutionError
from relmap.domain.loading.grouping import RelationInfo
from relmap.domain.loading.persistence import build_instance, find_or_create
from relmap.domain.mapping.models import is_missing

logger = logging.getLogger(__name__)


class ToOneRelationResolver:
    def __init__(self, session: Session):
        self.session = session

    def resolve(self, info: RelationInfo) -> Dict[str, Any]:
        """
        Return the owner's foreign key attributes for one owning relation.

        An empty dict means "leave the foreign key unset": the lookup value was
        empty, or nothing matched and creation is not allowed.
        """
        relation = info.relation
        lookup = info.lookup

        if lookup is None:
            if not info.data:
                return {}
            return self._create_without_lookup(info)

        lookup_value = info.data.get(lookup.field)
        if is_missing(lookup_value):
            return {}

        try:
            related, created = find_or_create(
                self.session,
                relation.related_cls,
                {lookup.field: lookup_value},
                attributes=info.data,
                create=lookup.create_if_missing,
            )
        except SQLAlchemyError as exc:
            raise RelationResolutionError.from_store_error(
                exc,
                relation.owner_cls.__name__,
                relation.name,
                lookup.field,
                lookup_value,
                lookup.create_if_missing,
            ) from exc

        if related is None:
            logger.debug(
                "Relation %s.%s omitted: no %s with %s=%r",
                relation.owner_cls.__name__,
                relation.name,
                relation.related_cls.__name__,
                lookup.field,
                lookup_value,
            )
            return {}

        if created:
            logger.debug("Created %s for relation '%s'", relation.related_cls.__name__, relation.name)

        return self._foreign_keys(info, related)

    def _create_without_lookup(self, info: RelationInfo) -> Dict[str, Any]:
        relation = info.relation
        try:
            related = build_instance(relation.related_cls, info.data)
            self.session.add(related)
            self.session.flush()
        except SQLAlchemyError as exc:
            raise RelationResolutionError.from_store_error(
                exc, relation.owner_cls.__name__, relation.name, "", None, True
            ) from exc
        return self._foreign_keys(info, related)

    def _foreign_keys(self, info: RelationInfo, related: Any) -> Dict[str, Any]:
        return {
            owner_attr: getattr(related, related_attr)
            for owner_attr, related_attr in info.relation.foreign_key_pairs()
        }
