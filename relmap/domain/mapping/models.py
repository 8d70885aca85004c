"""
Declarative mapping model consumed by the load engine.

A ``MappingDefinition`` holds one ``EntityMapping`` per target entity type;
each entity mapping lists ``ColumnMapping`` entries that route a source column
onto a dot-separated target path (``name``, ``category.name+``,
``tags.pivot.weight``, ``books.*``, ``profile.?bio``).
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


VIRTUAL_COLUMN_PREFIXES = ("__default_", "__skip_", "__random_")

FULL_ARRAY_SEGMENT = "*"
PIVOT_SEGMENT = "pivot"
OPTIONAL_MARKER = "?"
CREATE_MARKER = "+"


class DuplicateStrategy(str, Enum):
    """What to do when a unique-key lookup finds an existing record."""
    ERROR = "error"
    SKIP = "skip"
    UPDATE = "update"

    @classmethod
    def parse(cls, value: Any) -> "DuplicateStrategy":
        """Return the matching strategy, falling back to ERROR for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ERROR


class RelationLookup(BaseModel):
    """Explicit lookup configuration for a relation fragment."""
    model_config = ConfigDict(frozen=True)

    field: Optional[str] = None
    create_if_missing: bool = False
    delimiter: Optional[str] = None


class ColumnMapping(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_column: str = Field(alias="source")
    target_path: str = Field(alias="target")
    transforms: List[str] = Field(default_factory=list)
    default: Any = None
    validation_rule: Optional[str] = None
    relation_lookup: Optional[RelationLookup] = None

    @field_validator("target_path")
    def validate_target_path(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("target path cannot be blank")
        if any(not part for part in normalized.split(".")):
            raise ValueError(f"target path '{value}' contains an empty segment")
        return normalized

    @field_validator("transforms", mode="before")
    def split_pipe_transforms(cls, value: Any) -> Any:
        """Accept the compact ``"trim|lower"`` form as well as a list."""
        if isinstance(value, str):
            return [part.strip() for part in value.split("|") if part.strip()]
        return value

    @property
    def is_virtual(self) -> bool:
        return self.source_column.startswith(VIRTUAL_COLUMN_PREFIXES)

    @property
    def is_nested(self) -> bool:
        return "." in self.target_path

    def path_parts(self) -> List[str]:
        return self.target_path.split(".")

    @property
    def relation_name(self) -> Optional[str]:
        if not self.is_nested:
            return None
        return self.path_parts()[0]


class MappingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    unique_key: Optional[Union[str, List[str]]] = None
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.ERROR

    @field_validator("duplicate_strategy", mode="before")
    def parse_strategy(cls, value: Any) -> DuplicateStrategy:
        return DuplicateStrategy.parse(value)

    def unique_key_fields(self) -> Optional[List[str]]:
        """Normalize ``unique_key`` to a list (or None when not configured)."""
        if self.unique_key is None:
            return None
        if isinstance(self.unique_key, str):
            return [self.unique_key] if self.unique_key.strip() else None
        fields = [key for key in self.unique_key if key]
        return fields or None


class EntityMapping(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    entity: str
    columns: List[ColumnMapping] = Field(default_factory=list)
    options: MappingOptions = Field(default_factory=MappingOptions)
    execution_order: int = 1
    type: Literal["entity", "pivot_sync"] = "entity"
    relation_path: Optional[str] = None

    @field_validator("entity")
    def validate_entity(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("entity is required")
        return normalized

    @property
    def is_pivot_sync(self) -> bool:
        return self.type == "pivot_sync"

    def column_by_source(self, source_column: str) -> Optional[ColumnMapping]:
        for column in self.columns:
            if column.source_column == source_column:
                return column
        return None

    def column_by_target(self, target_path: str) -> Optional[ColumnMapping]:
        for column in self.columns:
            if column.target_path == target_path:
                return column
        return None


class MappingDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    mappings: List[EntityMapping] = Field(default_factory=list)
    name: str = ""
    description: Optional[str] = None
    source_schema: Optional[Dict[str, Any]] = None

    def mapping_for(self, entity: str) -> Optional[EntityMapping]:
        for mapping in self.mappings:
            if mapping.entity == entity:
                return mapping
        return None

    def ordered_mappings(self) -> List[EntityMapping]:
        """Entity mappings sorted by execution order (stable for ties)."""
        return sorted(self.mappings, key=lambda mapping: mapping.execution_order)


def is_missing(value: Any) -> bool:
    """True for None, empty strings and float NaN placeholders coming from readers."""
    if value is None:
        return True
    if isinstance(value, str) and value == "":
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


@dataclass(frozen=True)
class Row:
    """One source record. Read-only during load."""
    data: Mapping[str, Any]
    line_number: int = 0

    def get(self, column: str, default: Any = None) -> Any:
        return self.data.get(column, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)

    def is_empty(self) -> bool:
        for value in self.data.values():
            if is_missing(value):
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return False
        return True


@dataclass(frozen=True)
class TruncatedFieldRecord:
    field: str
    original_length: int
    max_length: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "original_length": self.original_length,
            "max_length": self.max_length,
        }
