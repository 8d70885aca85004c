"""
Run orchestration: applies a mapping definition to a sequence of rows.

Each row is its own transaction. Mappings run in execution order; a failure
rolls the row back, is classified for the summary, and either the run
continues (``error_policy="continue"``) or stops (``"stop"``).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from relmap.core.config import settings
from relmap.core.logging_config import configure_logging
from relmap.db.registry import EntityRegistry
from relmap.domain.loading.error_classifier import classify_error
from relmap.domain.loading.exceptions import LoadError, RowValidationError
from relmap.domain.loading.loader import RelationLoader
from relmap.domain.loading.pivot_sync import PivotSynchronizer
from relmap.domain.mapping.models import MappingDefinition, Row
from relmap.domain.mapping.ordering import ExecutionOrderPlanner
from relmap.domain.mapping.validators import MappingValidator

logger = logging.getLogger(__name__)

ERROR_POLICIES = ("continue", "stop")


@dataclass
class LoadRunSummary:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    empty_rows: int = 0
    stopped: bool = False
    truncated_fields: List[Dict[str, Any]] = field(default_factory=list)
    relation_errors: List[Dict[str, Any]] = field(default_factory=list)
    row_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.imported + self.skipped + self.errors


class LoadRunner:
    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        loader: Optional[RelationLoader] = None,
        error_policy: Optional[str] = None,
        skip_empty_rows: Optional[bool] = None,
    ):
        configure_logging()
        self.session = session
        self.registry = registry or EntityRegistry()
        self.loader = loader or RelationLoader(session, registry=self.registry)
        self.validator = MappingValidator(self.loader.transform_engine)
        self.pivot_sync = PivotSynchronizer(session, self.registry, self.loader.classifier, self.loader.values)
        self.planner = ExecutionOrderPlanner(self.registry, self.loader.classifier)

        self.error_policy = (error_policy or settings.error_policy).lower()
        if self.error_policy not in ERROR_POLICIES:
            raise ValueError(f"error_policy must be one of {ERROR_POLICIES}, got '{self.error_policy}'")
        self.skip_empty_rows = settings.skip_empty_rows if skip_empty_rows is None else skip_empty_rows

    def prepare(self, definition: MappingDefinition) -> MappingDefinition:
        """
        Check transforms and reorder the definition when its configured
        execution orders are invalid.

        Raises:
            ValueError: a column names an unknown transform
            CircularDependencyError: the mappings cannot be ordered
        """
        transform_errors = [
            f"{mapping.entity}.{column.target_path}: {message}"
            for mapping in definition.mappings
            for column in mapping.columns
            for message in self.loader.transform_engine.validate_specs(column.transforms)
        ]
        if transform_errors:
            raise ValueError("Invalid transforms: " + "; ".join(transform_errors))

        problems = self.planner.validate_execution_order(definition)
        if not problems:
            return definition

        for problem in problems:
            logger.warning("Execution order: %s", problem)
        ordered = self.planner.apply_execution_order(definition)
        logger.info(
            "Using execution order: %s",
            " -> ".join(mapping.entity for mapping in ordered.mappings),
        )
        return ordered

    def run(self, definition: MappingDefinition, rows: Iterable[Union[Row, Mapping[str, Any]]]) -> LoadRunSummary:
        definition = self.prepare(definition)
        mappings = definition.ordered_mappings()
        self.loader.reset_caches()
        summary = LoadRunSummary()

        for position, raw in enumerate(rows, start=1):
            row = raw if isinstance(raw, Row) else Row(dict(raw), line_number=position)

            if self.skip_empty_rows and row.is_empty():
                summary.empty_rows += 1
                continue

            current_entity = None
            diagnostics = LoadRunSummary()
            try:
                persisted = 0
                for mapping in mappings:
                    current_entity = mapping.entity
                    if mapping.is_pivot_sync:
                        if self.pivot_sync.sync(mapping, row):
                            persisted += 1
                        continue

                    entity_cls = self.registry.resolve(mapping.entity)
                    validation_errors = self.validator.validate_row(row, mapping, entity_cls)
                    if validation_errors:
                        raise RowValidationError(mapping.entity, validation_errors, row.line_number)

                    instance = self.loader.load(mapping, row)
                    self._collect_diagnostics(diagnostics, row, mapping.entity)
                    if instance is not None:
                        persisted += 1

                self.session.commit()
            except (LoadError, SQLAlchemyError) as exc:
                self.session.rollback()
                summary.errors += 1
                classification = classify_error(exc)
                summary.row_errors.append({
                    "row": row.line_number,
                    "entity": current_entity,
                    "type": classification["type"],
                    "message": str(exc),
                    "hint": classification["hint"],
                })
                logger.warning("Row %s failed (%s): %s", row.line_number, current_entity, exc)
                if self.error_policy == "stop":
                    summary.stopped = True
                    break
                continue

            summary.truncated_fields.extend(diagnostics.truncated_fields)
            summary.relation_errors.extend(diagnostics.relation_errors)
            if persisted:
                summary.imported += 1
            else:
                summary.skipped += 1

        logger.info(
            "Run '%s' finished: imported=%d skipped=%d errors=%d empty=%d",
            definition.name,
            summary.imported,
            summary.skipped,
            summary.errors,
            summary.empty_rows,
        )
        return summary

    def _collect_diagnostics(self, summary: LoadRunSummary, row: Row, entity: str) -> None:
        if self.loader.truncated_fields:
            summary.truncated_fields.append({
                "row": row.line_number,
                "entity": entity,
                "fields": [record.as_dict() for record in self.loader.truncated_fields],
            })
        for error in self.loader.relation_errors:
            summary.relation_errors.append({"row": row.line_number, **error})
