"""Shared pytest configuration and fixtures for the capture station test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from capture_station.adapters.analysis.mock_analysis import MockAnalysis
from capture_station.adapters.camera.mock_camera import MockCameraProvider
from capture_station.orchestrator.contracts import SessionConfig
from capture_station.orchestrator.preferences import FacingPreference
from capture_station.orchestrator.state_machine import CaptureSession
from capture_station.services.status_store import StatusStore


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "hardware: mark test as requiring a physical camera"
    )


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--run-hardware",
        action="store_true",
        default=False,
        help="Run tests that require a physical camera",
    )


def pytest_collection_modifyitems(config, items):
    """Skip hardware tests unless --run-hardware is specified."""
    if config.getoption("--run-hardware"):
        return

    skip_hardware = pytest.mark.skip(reason="Need --run-hardware option to run")
    for item in items:
        if "hardware" in item.keywords:
            item.add_marker(skip_hardware)


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def status() -> StatusStore:
    return StatusStore()


@pytest.fixture
def provider(status) -> MockCameraProvider:
    return MockCameraProvider(status)


@pytest.fixture
def endpoint(status) -> MockAnalysis:
    return MockAnalysis(status)


@pytest.fixture
def config() -> SessionConfig:
    """Short timings so lifecycle tests finish quickly."""
    return SessionConfig(ready_timeout=0.2, success_reset_delay=0.05)


@pytest.fixture
def preference(status) -> FacingPreference:
    return FacingPreference(status, default="rear")


@pytest.fixture
def make_session(status, provider, endpoint, config, preference):
    """Build a CaptureSession; keyword arguments override the default collaborators."""
    def _make(**kwargs):
        params = dict(
            provider=provider,
            endpoint=endpoint,
            status_store=status,
            preference=preference,
            config=config,
            session_id="test",
            kind="product",
            context={"lojaId": "loja-1"},
        )
        params.update(kwargs)
        return CaptureSession(**params)
    return _make


@pytest.fixture
def session(make_session) -> CaptureSession:
    return make_session()
