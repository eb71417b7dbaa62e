"""Pytest configuration and fixtures."""

import json
from collections.abc import Generator
from pathlib import Path

import pytest

from admission.identity import CallerIdentity, Role
from admission.quota import AdmissionController, Policy, PolicyRegistry, QueueOrder


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> PolicyRegistry:
    """Built-in policies plus small test policies."""
    registry = PolicyRegistry.with_builtins()
    registry.register(Policy(name="tiny", permit_limit=2, window_seconds=10))
    registry.register(
        Policy(name="queued", permit_limit=1, window_seconds=10, queue_limit=2)
    )
    registry.register(
        Policy(
            name="queuedNewest",
            permit_limit=1,
            window_seconds=10,
            queue_limit=2,
            queue_order=QueueOrder.NEWEST_FIRST,
        )
    )
    return registry


@pytest.fixture
def controller(registry: PolicyRegistry, clock: FakeClock) -> AdmissionController:
    return AdmissionController(registry=registry, clock=clock, lock_stripes=8)


@pytest.fixture
def admin() -> CallerIdentity:
    return CallerIdentity(ip="10.0.0.1", roles=frozenset({Role.ADMIN}), subject="admin-1")


@pytest.fixture
def receptionist() -> CallerIdentity:
    return CallerIdentity(
        ip="10.0.0.2", roles=frozenset({Role.RECEPCIONISTA}), subject="front-desk"
    )


@pytest.fixture
def policy_file(tmp_path: Path) -> Generator[Path, None, None]:
    """A valid JSON policy file."""
    path = tmp_path / "policies.json"
    path.write_text(
        json.dumps(
            {
                "policies": {
                    "readCommon": {
                        "permit_limit": 3,
                        "window_seconds": 60,
                        "description": "Test reads",
                    },
                },
                "role_policies": {
                    "writeByRole": {
                        "Admin": {"permit_limit": 4, "window_seconds": 60},
                        "Recepcionista": {
                            "permit_limit": 1,
                            "window_seconds": 60,
                            "queue_limit": 1,
                            "queue_order": "NewestFirst",
                        },
                    },
                },
            }
        )
    )
    yield path
