"""Root conftest — suite markers, shared clocks and in-process managers.

Container fixtures live in ``tests/integration/conftest.py`` so unit and
scenario tests run without Docker.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from dotenv import load_dotenv

from agentctx.audit import AuditLogger
from agentctx.config import AuditConfig
from agentctx.memory import MemoryManager
from agentctx.observability import reset_metrics
from agentctx.state import StateManager

# Load repository-root .env for test opt-ins (existing env vars stay authoritative).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)

DAY = 86_400.0
NOW = 1_700_000_000.0


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Attach suite markers from test path.

    - `tests/unit/*` -> `unit`
    - `tests/integration/*` -> `integration`
    - `tests/scenarios/*` -> `scenario`
    """
    root = Path(__file__).resolve().parents[1]
    for item in items:
        item_path = Path(str(item.fspath)).resolve()
        try:
            rel = item_path.relative_to(root)
        except ValueError:
            continue

        parts = rel.parts
        if len(parts) < 2 or parts[0] != "tests":
            continue
        if parts[1] == "unit":
            item.add_marker(pytest.mark.unit)
        elif parts[1] == "integration":
            item.add_marker(pytest.mark.integration)
        elif parts[1] == "scenarios":
            item.add_marker(pytest.mark.scenario)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = NOW) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_observability():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def audit_logger(tmp_path) -> AuditLogger:
    return AuditLogger(AuditConfig(file_path=str(tmp_path / "audit.jsonl")))


@pytest.fixture()
def memory_manager(clock, audit_logger) -> MemoryManager:
    return MemoryManager(audit_logger=audit_logger, clock=clock)


@pytest.fixture()
def state_manager(clock, audit_logger) -> StateManager:
    return StateManager(audit_logger=audit_logger, clock=clock)
