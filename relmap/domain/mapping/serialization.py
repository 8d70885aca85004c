"""
Reading and writing mapping definitions as JSON files.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import ValidationError

from relmap.domain.mapping.models import MappingDefinition
from relmap.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".json",)


def mapping_to_dict(definition: MappingDefinition) -> Dict[str, Any]:
    """Wire form of a definition (``source``/``target`` keys, defaults omitted)."""
    payload = definition.model_dump(by_alias=True, exclude_none=True, mode="json")
    for mapping in payload.get("mappings", []):
        for column in mapping.get("columns", []):
            if not column.get("transforms"):
                column.pop("transforms", None)
    return _make_json_safe(payload)


def mapping_to_json(definition: MappingDefinition, indent: int = 2) -> str:
    return json.dumps(mapping_to_dict(definition), indent=indent, ensure_ascii=False)


def mapping_from_dict(payload: Dict[str, Any]) -> MappingDefinition:
    return MappingDefinition.model_validate(payload)


def mapping_from_json(raw: Union[str, bytes]) -> MappingDefinition:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Mapping is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise ValueError("Mapping JSON must be an object with a 'mappings' list")

    try:
        return mapping_from_dict(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid mapping definition: {exc}") from exc


def _check_suffix(path: Path) -> None:
    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise ValueError(f"Unsupported mapping file format '{path.suffix}'; only JSON is supported")


def load_mapping_file(path: Union[str, Path]) -> MappingDefinition:
    path = Path(path)
    _check_suffix(path)
    definition = mapping_from_json(path.read_text(encoding="utf-8"))
    logger.info("Loaded mapping '%s' with %d entity mappings from %s", definition.name, len(definition.mappings), path)
    return definition


def save_mapping_file(definition: MappingDefinition, path: Union[str, Path]) -> Path:
    path = Path(path)
    _check_suffix(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(mapping_to_json(definition) + "\n", encoding="utf-8")
    logger.info("Saved mapping '%s' to %s", definition.name, path)
    return path
