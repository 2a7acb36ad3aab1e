"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from agent_server.client import RecordingServiceClient  # noqa: E402
from agent_server.controller import RunController  # noqa: E402
from agent_server.events import EventLog  # noqa: E402
from agent_server.guard import AccessGuard  # noqa: E402
from agent_server.registry import RunRegistry  # noqa: E402

ADMIN = "admin"
SERVICE = "inference-service"


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for run / event files during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("AGENT_SERVER_CONFIG", raising=False)
    for var in [k for k in os.environ if k.startswith("AGENT_SERVER__")]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def client() -> RecordingServiceClient:
    return RecordingServiceClient()


@pytest.fixture
def controller(client: RecordingServiceClient) -> RunController:
    return RunController(RunRegistry(), client, AccessGuard(ADMIN, SERVICE), events=EventLog())
