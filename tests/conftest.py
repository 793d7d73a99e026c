"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Test environment setup (before the app module reads its config)
- Shared config, catalog and request fixtures
"""

import dataclasses
import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/llm_gateway_test.log")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("ENABLED_PROVIDERS", "openai,anthropic")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-key")
os.environ.setdefault("DATA_PATH", "/tmp/llm_gateway_test_data")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def make_config():
    """Build an AppConfig from the test environment with field overrides."""
    from config import AppConfig

    def _make(**overrides):
        return dataclasses.replace(AppConfig.from_env(), **overrides)

    return _make


@pytest.fixture
def test_config(make_config, tmp_path):
    """Config pointing DATA_PATH at a temporary directory."""
    return make_config(data_path=str(tmp_path / "data"))


@pytest.fixture
def sample_catalog():
    """Catalog with one finance ranking: first slug served by openai only, second by anthropic."""
    from catalog import ModelCatalog

    return ModelCatalog.from_data(
        {
            ("finance", "most-popular"): [
                "openai/gpt-4o-mini",
                "anthropic/claude-sonnet-4.5",
            ],
            ("programming", "most-popular"): [
                "anthropic/claude-sonnet-4.5",
                "openai/gpt-4o-mini",
            ],
        },
        {
            "openai": ["gpt-4o-mini", "gpt-4o"],
            "anthropic": ["claude-sonnet-4-5-20250929", "claude-3-5-sonnet-20240620"],
        },
    )


class FakeCatalogStore:
    """In-memory stand-in for CatalogStore that counts lookups."""

    def __init__(self, catalog):
        self.catalog = catalog
        self.calls = 0

    async def get_catalog(self):
        self.calls += 1
        return self.catalog


@pytest.fixture
def fake_store(sample_catalog):
    return FakeCatalogStore(sample_catalog)
