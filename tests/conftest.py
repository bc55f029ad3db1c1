"""Pytest configuration and shared fixtures for Outpost tests."""

import os
import shutil
import ssl
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from outpost.models.deployment import DeploymentSettings, HealthSettings, StartupSettings

TEST_CERT_DER = b"outpost test certificate"
TEST_CERT_PEM = ssl.DER_cert_to_PEM_cert(TEST_CERT_DER).encode("ascii")


@pytest.fixture
def temp_dir() -> Generator[Path]:
    """Create a temporary directory for test file operations.

    Yields:
        Path to temporary directory
    """
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def settings(tmp_path: Path) -> DeploymentSettings:
    """Deployment settings rooted in a temporary directory with no waiting."""
    return DeploymentSettings(
        config_dir=tmp_path / "config",
        state_dir=tmp_path / "state",
        log_path=tmp_path / "logs" / "deploy_shadowbox_logs.txt",
        startup=StartupSettings(attempts=3, interval=0),
        health=HealthSettings(settle_delay=0, attempts=3, interval=0),
    )


@pytest.fixture
def cert_pem() -> bytes:
    """PEM certificate whose DER body is TEST_CERT_DER."""
    return TEST_CERT_PEM


# Configure pytest
def pytest_configure(config: Any) -> None:
    """Configure pytest with marker options."""
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests",
    )
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests",
    )
