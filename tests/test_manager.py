"""Tests for the admission manager lifecycle and policy loading."""

import asyncio
import json
from pathlib import Path

import pytest

from admission.config import Settings
from admission.identity import CallerIdentity, Role
from admission.quota import (
    AdmissionManager,
    DuplicatePolicyError,
    Policy,
    PolicyConfigError,
    PolicyRegistry,
    UnauthorizedRoleError,
    UnknownPolicyError,
    load_policies,
)


class TestLoadPolicies:
    """Tests for load_policies."""

    def test_no_path_uses_builtins(self) -> None:
        registry = load_policies(None)
        assert registry.names() == ["readCommon", "writeByRole"]

    def test_missing_file_uses_builtins(self, tmp_path: Path) -> None:
        registry = load_policies(tmp_path / "absent.json")
        assert registry.resolve("readCommon").permit_limit == 50

    def test_file(self, policy_file: Path) -> None:
        registry = load_policies(str(policy_file))
        assert registry.resolve("readCommon").permit_limit == 3

    def test_malformed_file_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "policies.json"
        path.write_text(json.dumps({"policies": {"reads": {"window_seconds": 5}}}))

        with pytest.raises(PolicyConfigError):
            load_policies(path)

    def test_duplicate_name_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "policies.json"
        path.write_text(
            json.dumps(
                {
                    "policies": {"writeByRole": {"permit_limit": 1, "window_seconds": 5}},
                    "role_policies": {
                        "writeByRole": {"Admin": {"permit_limit": 1, "window_seconds": 5}}
                    },
                }
            )
        )

        with pytest.raises(DuplicatePolicyError):
            load_policies(path)


class TestAdmissionManager:
    """Tests for AdmissionManager."""

    @pytest.fixture
    def manager(self) -> AdmissionManager:
        registry = PolicyRegistry.with_builtins()
        registry.register(
            Policy(name="burst", permit_limit=1, window_seconds=0.2, queue_limit=1)
        )
        registry.register(
            Policy(name="slow", permit_limit=1, window_seconds=5, queue_limit=1)
        )
        return AdmissionManager(registry=registry, sweep_interval_seconds=0.05)

    def test_from_settings(self, policy_file: Path) -> None:
        settings = Settings(
            _env_file=None,
            policies_path=str(policy_file),
            lock_stripes=4,
            sweep_interval_seconds=1.5,
        )
        manager = AdmissionManager.from_settings(settings)

        assert manager.registry.resolve("readCommon").permit_limit == 3
        assert not manager.is_running

    def test_default_registry(self) -> None:
        assert AdmissionManager().registry.names() == ["readCommon", "writeByRole"]

    @pytest.mark.asyncio
    async def test_start_stop(self, manager: AdmissionManager) -> None:
        await manager.start()
        assert manager.is_running

        await manager.stop()
        assert not manager.is_running
        assert manager.controller.closed

    @pytest.mark.asyncio
    async def test_start_twice(self, manager: AdmissionManager) -> None:
        await manager.start()
        await manager.start()
        await manager.stop()

        assert not manager.is_running

    @pytest.mark.asyncio
    async def test_background_sweep_evicts(self) -> None:
        registry = PolicyRegistry()
        registry.register(Policy(name="fast", permit_limit=5, window_seconds=0.01))
        manager = AdmissionManager(
            registry=registry, idle_windows=1, sweep_interval_seconds=0.02
        )
        await manager.start()
        try:
            await manager.evaluate("fast", CallerIdentity.anonymous("1.2.3.4"))
            assert manager.controller.state_count == 1

            await asyncio.sleep(0.2)
            assert manager.controller.state_count == 0
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_evaluate_allowed(self, manager: AdmissionManager) -> None:
        decision = await manager.evaluate("readCommon", CallerIdentity.anonymous("1.2.3.4"))

        assert decision.allowed
        assert decision.remaining == 49

    @pytest.mark.asyncio
    async def test_evaluate_waits_out_queue(self, manager: AdmissionManager) -> None:
        identity = CallerIdentity.anonymous("1.2.3.4")
        await manager.evaluate("burst", identity)

        decision = await asyncio.wait_for(manager.evaluate("burst", identity), timeout=2)

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_evaluate_rejects_when_queue_full(self, manager: AdmissionManager) -> None:
        identity = CallerIdentity.anonymous("1.2.3.4")
        await manager.evaluate("slow", identity)
        waiting = asyncio.create_task(manager.evaluate("slow", identity))
        await asyncio.sleep(0.02)

        decision = await manager.evaluate("slow", identity)

        assert decision.rejected
        assert decision.reason == "quota_exceeded"
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

    @pytest.mark.asyncio
    async def test_stop_rejects_waiting_requests(self, manager: AdmissionManager) -> None:
        identity = CallerIdentity.anonymous("1.2.3.4")
        await manager.start()
        await manager.evaluate("slow", identity)
        waiting = asyncio.create_task(manager.evaluate("slow", identity))
        await asyncio.sleep(0.02)

        await manager.stop()
        decision = await asyncio.wait_for(waiting, timeout=2)

        assert decision.rejected
        assert decision.reason == "shutdown"

    @pytest.mark.asyncio
    async def test_evaluate_errors(self, manager: AdmissionManager) -> None:
        with pytest.raises(UnknownPolicyError):
            await manager.evaluate("missing", None)
        with pytest.raises(UnauthorizedRoleError):
            await manager.evaluate("writeByRole", CallerIdentity.anonymous("1.2.3.4"))

    def test_status(self, manager: AdmissionManager) -> None:
        identity = CallerIdentity(ip="1.2.3.4", roles=frozenset({Role.RECEPCIONISTA}))
        manager.controller.evaluate("writeByRole", identity)

        status = manager.status("writeByRole", identity)

        assert status["policy"] == "writeByRole"
        assert status["applied_policy"]["name"] == "writeByRole:Recepcionista"
        assert status["partition_key"] == "role:Recepcionista"
        assert status["usage"]["remaining"] == 4

        # Status does not consume quota
        assert manager.status("writeByRole", identity)["usage"]["remaining"] == 4

    def test_describe_policies(self, manager: AdmissionManager) -> None:
        names = [p["name"] for p in manager.describe_policies()]
        assert names == ["burst", "readCommon", "slow", "writeByRole"]
