"""Pytest fixtures and configuration for graph rule classifier tests.

Provides common fixtures for configuration and the Rule Store.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from graphclassifier.config import reset_config
from graphclassifier.config_schema import AppConfig
from graphclassifier.db.store import RuleStore


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
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

engine:
  concurrency: 4
  thread_timeout_seconds: 5

graph:
  company_aliases:
    acme-corp.io: Acme
  vocabulary:
    projects: ["Phoenix"]
    topics: ["invoice"]

matching:
  ai_match_threshold: 0.7
"""


@pytest.fixture
def sample_config_dict(data_dir: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "engine": {"concurrency": 4, "thread_timeout_seconds": 5, "bulk_timeout_seconds": 30},
        "graph": {
            "company_aliases": {"acme-corp.io": "Acme"},
            "vocabulary": {"projects": ["Phoenix"], "topics": ["invoice"]},
        },
        "rule_store": {"db_path": str(data_dir / "rules.db")},
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
    """Set the GRAPHCLASSIFIER_CONFIG_PATH environment variable."""
    old_value = os.environ.get("GRAPHCLASSIFIER_CONFIG_PATH")
    os.environ["GRAPHCLASSIFIER_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["GRAPHCLASSIFIER_CONFIG_PATH"]
    else:
        os.environ["GRAPHCLASSIFIER_CONFIG_PATH"] = old_value


@pytest.fixture
async def store(data_dir: Path) -> RuleStore:
    """Return an initialized RuleStore on a temporary database."""
    s = RuleStore(data_dir / "rules.db")
    await s.initialize()
    return s
