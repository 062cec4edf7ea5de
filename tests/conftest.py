"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from engine.config import EngineConfig  # noqa: E402
from engine.config_loader import build_snapshot  # noqa: E402
from engine.models import ConfigurationDocument, ConfigurationSnapshot  # noqa: E402
from engine.registry import ResourceDescriptorRegistry  # noqa: E402
from engine.state import InMemoryStateBackend, StateStore  # noqa: E402
from provider_mock import MockCloud, register_mock_kinds  # noqa: E402


def make_snapshot(
    resources: list[dict[str, Any]], outputs: dict[str, Any] | None = None
) -> ConfigurationSnapshot:
    """Build a snapshot from resource declarations written as dicts."""
    document = ConfigurationDocument.model_validate(
        {"resources": resources, "outputs": outputs or {}}
    )
    return build_snapshot([("test.yaml", document)], source="test")


@pytest.fixture
def cloud() -> MockCloud:
    return MockCloud()


@pytest.fixture
def registry(cloud: MockCloud) -> ResourceDescriptorRegistry:
    registry = ResourceDescriptorRegistry()
    register_mock_kinds(registry, cloud)
    return registry


@pytest.fixture
def backend() -> InMemoryStateBackend:
    return InMemoryStateBackend()


@pytest.fixture
def state_store(backend: InMemoryStateBackend) -> StateStore:
    return StateStore(backend)


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Fast-retry configuration rooted in a temporary directory."""
    config_dir = tmp_path / "infra"
    config_dir.mkdir()
    return EngineConfig(
        config_dir=config_dir,
        state_dir=tmp_path / "state",
        parallelism=4,
        max_attempts=3,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        operation_timeout_seconds=5,
    )
