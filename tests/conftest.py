"""Shared pytest fixtures for the k3sbox test suite."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from k3sbox.cluster.session import ClusterSession
from k3sbox.config import Settings
from k3sbox.engine.interfaces import ContainerEngine
from k3sbox.shared.models import ExecResult, ServiceHandle

FIXED_PORT = 40123
FIXED_TIME = "2026-10-18T12:00:00+00:00"


@pytest.fixture()
def settings() -> Settings:
    """Return a Settings instance with test defaults."""
    return Settings(
        image="rancher/k3s:v1.30.4-k3s1",
        k9s_arch="amd64",
        kubeconfig_wait_timeout=None,
    )


@pytest.fixture()
def session(settings: Settings) -> ClusterSession:
    return ClusterSession.create(
        "demo",
        settings=settings,
        allocate=lambda: FIXED_PORT,
        clock=lambda: FIXED_TIME,
    )


@pytest.fixture()
def mock_engine() -> AsyncMock:
    """Mock async container engine."""
    mock = AsyncMock(spec=ContainerEngine)
    mock.run.return_value = ExecResult(exit_code=0, output="")
    mock.read_file.return_value = b"apiVersion: v1\n"
    mock.start_service.return_value = ServiceHandle(container_id="svc-123", name="demo", port=FIXED_PORT)
    mock.find_service.return_value = None
    mock.prepare_terminal.return_value = "term-456"
    return mock
