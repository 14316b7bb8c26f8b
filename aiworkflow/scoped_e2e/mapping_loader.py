"""Load the module mapping table from a YAML file."""

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import ValidationError

from aiworkflow.scoped_e2e.errors import MappingLoadError
from aiworkflow.scoped_e2e.models.module_mapping import ModuleMapping

logger = logging.getLogger(__name__)

ROOT_KEY = "e2e-mapping"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")


def expand_placeholders(value: object) -> object:
    """Replace ``${VAR}`` and ``${VAR:default}`` in every string of a YAML tree.

    Unset variables without a default are left untouched.
    """
    if isinstance(value, str):
        return _PLACEHOLDER.sub(_substitute, value)
    if isinstance(value, list):
        return [expand_placeholders(item) for item in value]
    if isinstance(value, dict):
        return {key: expand_placeholders(item) for key, item in value.items()}
    return value


def _substitute(match: re.Match[str]) -> str:
    name, default = match.group(1), match.group(2)
    if name in os.environ:
        return os.environ[name]
    if default is not None:
        return default
    logger.warning(f"Environment variable {name} is not set")
    return match.group(0)


def load_module_mapping(mapping_file: Path) -> ModuleMapping:
    """Load and validate the module mapping table.

    Args:
        mapping_file: Path to the mapping YAML (optionally nested under
            an ``e2e-mapping`` root key)

    Returns:
        Parsed module mapping

    Raises:
        FileNotFoundError: If the mapping file doesn't exist
        MappingLoadError: If YAML is invalid or doesn't match schema

    """
    if not mapping_file.exists():
        raise FileNotFoundError(f"Mapping file not found: {mapping_file}")

    try:
        with mapping_file.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise MappingLoadError(f"Invalid YAML in {mapping_file}: {e}") from e

    if data is None:
        raise MappingLoadError(f"Empty mapping file: {mapping_file}")

    if not isinstance(data, dict):
        raise MappingLoadError(f"Mapping file must contain a mapping: {mapping_file}")

    if ROOT_KEY in data:
        data = data[ROOT_KEY]

    try:
        mapping = ModuleMapping.model_validate(expand_placeholders(data))
    except ValidationError as e:
        raise MappingLoadError(
            f"Invalid module mapping schema in {mapping_file}: {e}"
        ) from e

    _check_unique_ids(mapping, mapping_file)

    logger.info(f"Loaded {len(mapping.modules)} module definitions from {mapping_file}")
    return mapping


def _check_unique_ids(mapping: ModuleMapping, mapping_file: Path) -> None:
    seen: set[str] = set()
    for module in mapping.modules:
        if module.id in seen:
            raise MappingLoadError(
                f"Duplicate module id '{module.id}' in {mapping_file}"
            )
        seen.add(module.id)

        flow_ids: set[str] = set()
        for flow in module.test_flows:
            if flow.id in flow_ids:
                raise MappingLoadError(
                    f"Duplicate flow id '{flow.id}' in module '{module.id}' "
                    f"of {mapping_file}"
                )
            flow_ids.add(flow.id)
