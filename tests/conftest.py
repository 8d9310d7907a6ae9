"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fake_cloud import FakeClock, FakeControlPlane  # noqa: E402
from fake_cloud.landing_zone import RESOURCE_GROUP  # noqa: E402
from lzctl.report import ExecutionReport, ExecutionReporter  # noqa: E402
from lzctl.waiter import PropagationWaiter  # noqa: E402


@pytest.fixture
def cloud() -> FakeControlPlane:
    """Fake control plane holding the landing zone resource group."""
    fake = FakeControlPlane()
    fake.add_resource_group(RESOURCE_GROUP)
    return fake


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def waiter(clock: FakeClock) -> PropagationWaiter:
    return PropagationWaiter(clock)


@pytest.fixture
def echoed() -> list[str]:
    """Lines the reporter would have printed."""
    return []


@pytest.fixture
def reporter_factory(echoed: list[str]):
    def factory(operation: str = "provision", preview: bool = False) -> ExecutionReporter:
        return ExecutionReporter(
            ExecutionReport(operation=operation, preview=preview), echo=echoed.append
        )

    return factory
