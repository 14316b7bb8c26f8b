"""Tests for module mapping loader."""

from pathlib import Path

import pytest

from aiworkflow.scoped_e2e.errors import MappingLoadError
from aiworkflow.scoped_e2e.mapping_loader import (
    expand_placeholders,
    load_module_mapping,
)

MAPPING_YAML = """
e2e-mapping:
  login:
    url: "/login"
    username-field: "input[name='username']"
    password-field: "input[name='password']"
    submit-button: "button[type='submit']"
    success-redirect: "/"
    test-username: "${E2E_TEST_USER:admin}"
    test-password: "${E2E_TEST_PASSWORD}"
  modules:
    - id: order
      name: Orders
      critical: true
      file-patterns:
        - "**/views/order/**"
        - "**/service/Order*"
      test-flows:
        - id: order-list
          name: Order list
          route: /orders
          priority: 1
        - id: order-create
          name: Create order
          route: /orders/new
          priority: 2
    - id: user
      name: Users
      file-patterns:
        - "**/views/user/**"
"""


def test_load_module_mapping_valid(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """load_module_mapping parses the mapping under its root key."""
    monkeypatch.delenv("E2E_TEST_USER", raising=False)
    monkeypatch.setenv("E2E_TEST_PASSWORD", "s3cret")
    mapping_file = tmp_path / "e2e-module-mapping.yaml"
    mapping_file.write_text(MAPPING_YAML)

    mapping = load_module_mapping(mapping_file)

    assert [m.id for m in mapping.modules] == ["order", "user"]
    assert mapping.modules[0].critical is True
    assert [f.id for f in mapping.modules[0].test_flows] == ["order-list", "order-create"]
    assert mapping.login.test_username == "admin"
    assert mapping.login.test_password == "s3cret"


def test_load_module_mapping_without_root_key(tmp_path: Path) -> None:
    """load_module_mapping accepts a mapping without the root key."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text(
        """
modules:
  - id: user
    name: Users
"""
    )

    mapping = load_module_mapping(mapping_file)

    assert mapping.modules[0].id == "user"
    assert mapping.login.url == "/login"


def test_load_module_mapping_file_not_found(tmp_path: Path) -> None:
    """load_module_mapping raises FileNotFoundError for a missing file."""
    with pytest.raises(FileNotFoundError, match="Mapping file not found"):
        load_module_mapping(tmp_path / "missing.yaml")


def test_load_module_mapping_invalid_yaml(tmp_path: Path) -> None:
    """load_module_mapping raises MappingLoadError for invalid YAML."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text("modules: [unclosed")

    with pytest.raises(MappingLoadError, match="Invalid YAML"):
        load_module_mapping(mapping_file)


def test_load_module_mapping_empty_file(tmp_path: Path) -> None:
    """load_module_mapping raises MappingLoadError for an empty file."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text("")

    with pytest.raises(MappingLoadError, match="Empty mapping file"):
        load_module_mapping(mapping_file)


def test_load_module_mapping_invalid_schema(tmp_path: Path) -> None:
    """load_module_mapping raises MappingLoadError when the schema doesn't match."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text(
        """
modules:
  - name: Missing id
"""
    )

    with pytest.raises(MappingLoadError, match="Invalid module mapping schema"):
        load_module_mapping(mapping_file)


def test_load_module_mapping_duplicate_ids(tmp_path: Path) -> None:
    """load_module_mapping rejects duplicate module ids."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text(
        """
modules:
  - id: user
    name: Users
  - id: user
    name: Users again
"""
    )

    with pytest.raises(MappingLoadError, match="Duplicate module id 'user'"):
        load_module_mapping(mapping_file)


def test_load_module_mapping_duplicate_flow_ids(tmp_path: Path) -> None:
    """load_module_mapping rejects duplicate flow ids within a module."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text(
        """
modules:
  - id: user
    name: Users
    test-flows:
      - id: user-list
        name: User list
        route: /users
      - id: user-list
        name: User list again
        route: /users/all
"""
    )

    with pytest.raises(
        MappingLoadError, match="Duplicate flow id 'user-list' in module 'user'"
    ):
        load_module_mapping(mapping_file)


def test_mapping_load_error_is_value_error(tmp_path: Path) -> None:
    """MappingLoadError can be caught as ValueError."""
    mapping_file = tmp_path / "mapping.yaml"
    mapping_file.write_text("- just\n- a list\n")

    with pytest.raises(ValueError):
        load_module_mapping(mapping_file)


def test_expand_placeholders(monkeypatch: pytest.MonkeyPatch) -> None:
    """expand_placeholders substitutes variables recursively."""
    monkeypatch.setenv("APP_HOST", "staging")
    monkeypatch.delenv("UNSET_VAR", raising=False)

    expanded = expand_placeholders(
        {
            "url": "https://${APP_HOST}/login",
            "list": ["${UNSET_VAR:fallback}", "${UNSET_VAR}"],
            "number": 3,
        }
    )

    assert expanded == {
        "url": "https://staging/login",
        "list": ["fallback", "${UNSET_VAR}"],
        "number": 3,
    }
