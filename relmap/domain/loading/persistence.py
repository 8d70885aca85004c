"""
Duplicate-aware writes of entity records.

The engine never commits: every write ends with a flush so generated keys are
available to the relations written afterwards.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from relmap.db.introspection import attribute_names, primary_key_attributes
from relmap.domain.loading.exceptions import DuplicateRecordError
from relmap.domain.mapping.models import DuplicateStrategy, MappingOptions, is_missing

logger = logging.getLogger(__name__)

_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: ([^\n]+)", re.IGNORECASE)
_POSTGRES_UNIQUE = re.compile(r"Key \(([^)]+)\)=", re.IGNORECASE)
_MYSQL_UNIQUE = re.compile(r"Duplicate entry '.*' for key '([^']+)'", re.IGNORECASE)


def is_unique_violation(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", None) or exc).lower()
    return (
        "unique constraint" in message
        or "duplicate key value" in message
        or "duplicate entry" in message
    )


def parse_unique_violation_columns(message: str, table_name: Optional[str] = None) -> List[str]:
    """
    Extract the column names from a unique-constraint error message.

    Handles SQLite (``UNIQUE constraint failed: books.isbn``), PostgreSQL
    (``Key (isbn)=(...) already exists``) and MySQL
    (``Duplicate entry '...' for key 'books_isbn_unique'``) wording.
    """
    match = _SQLITE_UNIQUE.search(message)
    if match:
        return [part.strip().split(".")[-1] for part in match.group(1).split(",") if part.strip()]

    match = _POSTGRES_UNIQUE.search(message)
    if match:
        return [part.strip().strip('"') for part in match.group(1).split(",")]

    match = _MYSQL_UNIQUE.search(message)
    if match:
        key = match.group(1).split(".")[-1]
        if key.endswith("_unique"):
            key = key[: -len("_unique")]
        if table_name and key.startswith(f"{table_name}_"):
            key = key[len(table_name) + 1:]
        return [key]

    return []


def build_instance(entity_cls: type, attributes: Dict[str, Any]) -> Any:
    instance = entity_cls()
    assign_attributes(instance, attributes)
    return instance


def assign_attributes(instance: Any, attributes: Dict[str, Any]) -> None:
    known = set(attribute_names(type(instance)))
    for name, value in attributes.items():
        if name not in known:
            logger.warning("%s has no column attribute '%s'; value ignored", type(instance).__name__, name)
            continue
        setattr(instance, name, value)


def find_or_create(
    session: Session,
    entity_cls: type,
    lookup: Dict[str, Any],
    attributes: Optional[Dict[str, Any]] = None,
    create: bool = True,
) -> Tuple[Optional[Any], bool]:
    """
    Find a record by ``lookup`` or create it from ``attributes`` + ``lookup``.

    The insert runs in a savepoint; when a concurrent writer wins the race the
    unique violation is rolled back and the winner's record is returned.

    Returns:
        ``(instance or None, created)``
    """
    instance = session.query(entity_cls).filter_by(**lookup).first()
    if instance is not None or not create:
        return instance, False

    values = {**(attributes or {}), **lookup}
    savepoint = session.begin_nested()
    try:
        instance = build_instance(entity_cls, values)
        session.add(instance)
        session.flush()
    except IntegrityError as exc:
        savepoint.rollback()
        existing = session.query(entity_cls).filter_by(**lookup).first()
        if existing is None:
            raise
        logger.debug("Lost insert race for %s %s; using existing record (%s)", entity_cls.__name__, lookup, exc.orig)
        return existing, False

    savepoint.commit()
    return instance, True


class EntityPersister:
    def __init__(self, session: Session):
        self.session = session

    def persist(self, entity_cls: type, attributes: Dict[str, Any], options: MappingOptions) -> Optional[Any]:
        """
        Create or reconcile one record.

        Returns:
            The persisted instance, or None when the duplicate strategy skipped it

        Raises:
            DuplicateRecordError: duplicate found and the strategy is ``error``
        """
        strategy = DuplicateStrategy.parse(options.duplicate_strategy)
        unique_key = options.unique_key_fields()

        if not unique_key:
            return self._create_or_reconcile(entity_cls, attributes, strategy)

        key_values = {key: attributes.get(key) for key in unique_key}
        if any(is_missing(value) for value in key_values.values()):
            return self._create_or_reconcile(entity_cls, attributes, strategy)

        existing = self.session.query(entity_cls).filter_by(**key_values).first()
        if existing is None:
            return self._create_or_reconcile(entity_cls, attributes, strategy)

        return self.apply_duplicate_strategy(existing, attributes, strategy, unique_key)

    def create(self, entity_cls: type, attributes: Dict[str, Any]) -> Any:
        instance = build_instance(entity_cls, attributes)
        self.session.add(instance)
        self.session.flush()
        return instance

    def apply_duplicate_strategy(
        self,
        existing: Any,
        attributes: Dict[str, Any],
        strategy: DuplicateStrategy,
        unique_key: Sequence[str],
    ) -> Optional[Any]:
        entity_name = type(existing).__name__

        if strategy == DuplicateStrategy.SKIP:
            logger.debug("Skipping duplicate %s (%s)", entity_name, ", ".join(unique_key))
            return None

        if strategy == DuplicateStrategy.UPDATE:
            assign_attributes(existing, attributes)
            self.session.flush()
            return existing

        raise DuplicateRecordError(
            entity_name,
            unique_key,
            {key: attributes.get(key) for key in unique_key},
        )

    def _create_or_reconcile(
        self,
        entity_cls: type,
        attributes: Dict[str, Any],
        strategy: DuplicateStrategy,
    ) -> Optional[Any]:
        savepoint = self.session.begin_nested()
        try:
            instance = build_instance(entity_cls, attributes)
            self.session.add(instance)
            self.session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            if not is_unique_violation(exc):
                raise
            return self._handle_store_duplicate(entity_cls, attributes, strategy, exc)

        savepoint.commit()
        return instance

    def _handle_store_duplicate(
        self,
        entity_cls: type,
        attributes: Dict[str, Any],
        strategy: DuplicateStrategy,
        exc: IntegrityError,
    ) -> Optional[Any]:
        table_name = sa_inspect(entity_cls).local_table.name
        columns = parse_unique_violation_columns(str(exc.orig), table_name)
        fields = [name for name in columns if name in attributes] or columns

        if strategy == DuplicateStrategy.SKIP:
            logger.debug("Skipping %s rejected by unique constraint on %s", entity_cls.__name__, fields)
            return None

        if strategy == DuplicateStrategy.ERROR:
            raise DuplicateRecordError(
                entity_cls.__name__,
                fields,
                {name: attributes.get(name) for name in fields},
            ) from exc

        existing = self._find_existing(entity_cls, attributes, fields)
        if existing is None:
            raise exc

        return self.apply_duplicate_strategy(existing, attributes, strategy, fields)

    def _find_existing(self, entity_cls: type, attributes: Dict[str, Any], fields: Sequence[str]) -> Optional[Any]:
        primary_keys = primary_key_attributes(entity_cls)
        if primary_keys and all(not is_missing(attributes.get(key)) for key in primary_keys):
            existing = self.session.get(
                entity_cls,
                tuple(attributes[key] for key in primary_keys) if len(primary_keys) > 1 else attributes[primary_keys[0]],
            )
            if existing is not None:
                return existing

        lookup = {name: attributes[name] for name in fields if name in attributes}
        if not lookup:
            return None
        return self.session.query(entity_cls).filter_by(**lookup).first()
