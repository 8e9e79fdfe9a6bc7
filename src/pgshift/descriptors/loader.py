"""
Loading and dumping table definitions as YAML documents.

A document holds either a single definition, a list of definitions, or
a mapping with a ``tables`` list. Order is preserved, which matters for
bulk generation.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .model import TableDefinition
from .validator import Violation
from ..exceptions import ConfigurationError, ValidationError


logger = logging.getLogger(__name__)


def parse_definitions(data: Any) -> List[TableDefinition]:
    """Build definitions from already-parsed YAML/JSON data."""
    if data is None:
        return []
    if isinstance(data, dict) and "tables" in data:
        data = data["tables"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError(
            [Violation("$", "document.shape", "expected a mapping or a list of tables")]
        )

    definitions = []
    violations: List[Violation] = []
    for i, item in enumerate(data):
        try:
            definitions.append(TableDefinition.model_validate(item))
        except PydanticValidationError as e:
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"])
                violations.append(
                    Violation(f"tables[{i}].{location}" if location else f"tables[{i}]",
                              f"schema.{error['type']}", error["msg"])
                )

    if violations:
        raise ValidationError(violations)
    return definitions


def load_definitions(path: Union[str, Path]) -> List[TableDefinition]:
    """Load definitions from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Descriptor file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in descriptor file: {e}")

    definitions = parse_definitions(data)
    logger.debug(f"Loaded {len(definitions)} definition(s) from {path}")
    return definitions


def definition_to_dict(definition: TableDefinition) -> Dict[str, Any]:
    return definition.model_dump(mode="json", by_alias=True, exclude_defaults=True)


def dump_definitions(definitions: List[TableDefinition], path: Union[str, Path]) -> None:
    """Write definitions to a YAML file that ``load_definitions`` reads back."""
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(
            {"tables": [definition_to_dict(d) for d in definitions]},
            f,
            default_flow_style=False,
            sort_keys=False,
        )
