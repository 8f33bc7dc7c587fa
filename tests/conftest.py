"""Pytest fixtures and configuration for mailfacts tests.

Provides common fixtures for configuration, database, and the vault.
"""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from mailfacts.auth.vault import CredentialVault
from mailfacts.config import reset_config
from mailfacts.config_schema import AppConfig
from mailfacts.db.store import DatabaseStore

TEST_VAULT_KEY = "test-vault-key-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

google:
  client_id: "test-client-id.apps.googleusercontent.com"

timezone: "Asia/Kolkata"

sync:
  interval_hours: 6
  fetch_batch_size: 50

extraction:
  batch_size: 20
  interval_minutes: 15
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "google": {"client_id": "test-client-id.apps.googleusercontent.com"},
        "timezone": "Asia/Kolkata",
        "sync": {"interval_hours": 6, "fetch_batch_size": 50},
        "extraction": {"batch_size": 20, "interval_minutes": 15},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the MAILFACTS_CONFIG_PATH environment variable."""
    old_value = os.environ.get("MAILFACTS_CONFIG_PATH")
    os.environ["MAILFACTS_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["MAILFACTS_CONFIG_PATH"]
    else:
        os.environ["MAILFACTS_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore on a temporary file."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s


@pytest.fixture
def vault_key() -> str:
    return TEST_VAULT_KEY


@pytest.fixture
def vault(vault_key: str) -> CredentialVault:
    """Return a vault with a fixed test key."""
    return CredentialVault(vault_key)
