"""
Admission service lifecycle.

Owns the policy registry, partition resolver and controller for one
application instance, loads policies at startup and runs the periodic
sweep that drains queues and evicts idle quota state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable

from admission.config import Settings
from admission.identity import CallerIdentity
from admission.quota.controller import AdmissionController, Decision
from admission.quota.partition import PartitionKeyResolver
from admission.quota.registry import PolicyRegistry

logger = logging.getLogger(__name__)


def load_policies(path: str | Path | None) -> PolicyRegistry:
    """
    Load policies from a JSON file, or the built-ins when no file is given.

    A configured path that does not exist falls back to the built-ins.
    A file that exists but is malformed raises PolicyConfigError.
    """
    if path is None:
        return PolicyRegistry.with_builtins()

    path = Path(path)
    if not path.exists():
        logger.warning(f"Policy file {path} not found, using built-in policies")
        return PolicyRegistry.with_builtins()

    return PolicyRegistry.from_file(path)


class AdmissionManager:
    """
    Application-scoped admission service.

    Usage:
        manager = AdmissionManager.from_settings(settings)
        await manager.start()
        decision = await manager.evaluate("readCommon", identity)
        await manager.stop()
    """

    def __init__(
        self,
        registry: PolicyRegistry | None = None,
        resolver: PartitionKeyResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
        lock_stripes: int = 64,
        idle_windows: int = 10,
        sweep_interval_seconds: float = 30.0,
    ) -> None:
        """
        Initialize admission manager.

        Args:
            registry: Policy registry (built-in policies if None)
            resolver: Partition key resolver
            clock: Monotonic time source in seconds
            lock_stripes: Lock stripes for the controller
            idle_windows: Idle windows before quota state is evicted
            sweep_interval_seconds: Period of the background sweep
        """
        self._registry = registry or PolicyRegistry.with_builtins()
        self._controller = AdmissionController(
            registry=self._registry,
            resolver=resolver,
            clock=clock,
            lock_stripes=lock_stripes,
            idle_windows=idle_windows,
        )
        self._sweep_interval = sweep_interval_seconds
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    @classmethod
    def from_settings(cls, settings: Settings) -> AdmissionManager:
        return cls(
            registry=load_policies(settings.policies_file),
            lock_stripes=settings.lock_stripes,
            idle_windows=settings.idle_eviction_windows,
            sweep_interval_seconds=settings.sweep_interval_seconds,
        )

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry

    @property
    def controller(self) -> AdmissionController:
        return self._controller

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep."""
        if self._sweep_task is not None:
            return

        self._running = True

        async def sweep_loop() -> None:
            while self._running:
                try:
                    await asyncio.sleep(self._sweep_interval)
                    self._controller.sweep()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Admission sweep error: {e}")

        self._sweep_task = asyncio.create_task(sweep_loop())
        logger.info(
            f"Admission manager started: {', '.join(self._registry.names())} "
            f"(sweep every {self._sweep_interval}s)"
        )

    async def stop(self) -> None:
        """Stop the sweep and reject all queued requests."""
        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self._controller.shutdown()
        logger.info("Admission manager stopped")

    async def evaluate(self, policy_name: str, identity: CallerIdentity | None) -> Decision:
        """
        Evaluate a request and wait out a queued decision.

        Returns Allowed or Rejected, never Queued.

        Raises:
            UnknownPolicyError: If the policy is not registered
            UnauthorizedRoleError: If a role-based policy does not cover the caller
        """
        decision = self._controller.evaluate(policy_name, identity)
        if decision.queued:
            decision = await self._controller.wait(decision)
        if decision.rejected:
            logger.warning(
                f"Rejected {decision.partition_key} on {decision.policy_name}: "
                f"{decision.reason}"
            )
        return decision

    def status(self, policy_name: str, identity: CallerIdentity | None) -> dict[str, Any]:
        """
        Quota status for a caller without consuming quota.

        Raises:
            UnknownPolicyError: If the policy is not registered
            UnauthorizedRoleError: If a role-based policy does not cover the caller
        """
        identity = identity or CallerIdentity.anonymous()
        policy = self._registry.select(policy_name, identity)
        key = self._controller.resolver.resolve_key(identity)
        decision = self._controller.check(policy.name, key)
        return {
            "policy": policy_name,
            "applied_policy": policy.to_dict(),
            "partition_key": key,
            "usage": decision.to_dict(),
        }

    def describe_policies(self) -> list[dict[str, Any]]:
        return self._registry.describe()
