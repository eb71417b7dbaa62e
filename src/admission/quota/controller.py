"""
Fixed-window admission controller.

Tracks one QuotaState per (policy, partition key) and decides whether a
request may proceed now, wait for the next window, or must be rejected.

Concurrency model:
- Each (policy, key) pair maps onto one of N lock stripes; all reads and
  writes of a QuotaState (including its creation and eviction) happen under
  that stripe, so unrelated keys rarely contend and a key never has two states.
- Critical sections never await, so the same locks serve threads and
  asyncio tasks.
- Queued tickets are released lazily when a window rolls over (on the next
  access to the key, a poll from the waiting caller, or the periodic sweep).
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from admission.identity import CallerIdentity
from admission.quota.partition import PartitionKeyResolver
from admission.quota.policy import Policy, QueueOrder
from admission.quota.registry import PolicyRegistry

logger = logging.getLogger(__name__)

REASON_QUOTA_EXCEEDED = "quota_exceeded"
REASON_QUEUE_TIMEOUT = "queue_timeout"
REASON_CANCELLED = "cancelled"
REASON_SHUTDOWN = "shutdown"


class DecisionOutcome(str, Enum):
    """Outcome of an admission decision."""

    ALLOWED = "allowed"
    QUEUED = "queued"
    REJECTED = "rejected"


class TicketStatus(str, Enum):
    """Lifecycle of a queued request."""

    PENDING = "pending"
    ALLOWED = "allowed"
    REJECTED = "rejected"


@dataclass(eq=False)
class QueueTicket:
    """A request waiting for capacity in a later window."""

    policy_name: str
    partition_key: str
    enqueued_at: float
    deadline: float
    """Latest time the ticket may still be admitted."""

    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TicketStatus = TicketStatus.PENDING
    resolved_at: float | None = None
    reason: str | None = None

    @property
    def pending(self) -> bool:
        return self.status is TicketStatus.PENDING

    def _resolve(self, status: TicketStatus, now: float, reason: str | None = None) -> None:
        self.status = status
        self.resolved_at = now
        self.reason = reason


@dataclass(eq=False)
class QuotaState:
    """Fixed-window counter for one (policy, partition key) pair."""

    policy_name: str
    partition_key: str
    window_start: float
    count: int = 0
    queue: deque[QueueTicket] = field(default_factory=deque)
    last_seen: float = 0.0

    def window_end(self, policy: Policy) -> float:
        return self.window_start + policy.window_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": self.policy_name,
            "partition_key": self.partition_key,
            "window_start": self.window_start,
            "count": self.count,
            "queued": len(self.queue),
            "last_seen": self.last_seen,
        }


@dataclass(frozen=True)
class Decision:
    """Result of an admission check."""

    outcome: DecisionOutcome
    policy_name: str
    partition_key: str
    limit: int
    """Requests admitted per window under the applied policy."""

    remaining: int
    """Requests still admissible in the current window."""

    retry_after: float | None = None
    """Seconds until capacity frees up (rejected) or until the next release check (queued)."""

    reason: str | None = None
    ticket: QueueTicket | None = None

    @property
    def allowed(self) -> bool:
        return self.outcome is DecisionOutcome.ALLOWED

    @property
    def queued(self) -> bool:
        return self.outcome is DecisionOutcome.QUEUED

    @property
    def rejected(self) -> bool:
        return self.outcome is DecisionOutcome.REJECTED

    @property
    def retry_after_header(self) -> int | None:
        """retry_after rounded up to whole seconds, as used for a Retry-After header."""
        if self.retry_after is None:
            return None
        return max(1, math.ceil(self.retry_after))

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "policy": self.policy_name,
            "partition_key": self.partition_key,
            "limit": self.limit,
            "remaining": self.remaining,
            "retry_after": self.retry_after,
            "reason": self.reason,
            "ticket_id": self.ticket.ticket_id if self.ticket else None,
        }


class AdmissionController:
    """
    Evaluates requests against fixed-window policies.

    Algorithm per (policy, key):
    1. If ``now`` is past the current window, start a new window at ``now``
       and release queued tickets (in the policy's queue order) into it.
    2. If ``count < permit_limit``: count the request, Allowed.
    3. Else if the queue has room: enqueue, Queued.
    4. Else: Rejected with the time left in the window.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        resolver: PartitionKeyResolver | None = None,
        clock: Callable[[], float] = time.monotonic,
        lock_stripes: int = 64,
        idle_windows: int = 10,
        min_poll_interval: float = 0.005,
        max_poll_interval: float = 0.1,
    ) -> None:
        """
        Initialize controller.

        Args:
            registry: Policies to evaluate against
            resolver: Partition key resolver (default resolver if None)
            clock: Monotonic time source in seconds
            lock_stripes: Number of lock stripes for per-key serialization
            idle_windows: Evict states idle for this many of their windows
            min_poll_interval: Lower bound on sleeps while waiting in a queue
            max_poll_interval: Upper bound on sleeps while waiting in a queue
        """
        if lock_stripes <= 0:
            raise ValueError("lock_stripes must be positive")
        if idle_windows <= 0:
            raise ValueError("idle_windows must be positive")

        self._registry = registry
        self._resolver = resolver or PartitionKeyResolver()
        self._clock = clock
        self._stripes = [threading.Lock() for _ in range(lock_stripes)]
        self._idle_windows = idle_windows
        self._min_poll_interval = min_poll_interval
        self._max_poll_interval = max(min_poll_interval, max_poll_interval)
        self._states: dict[tuple[str, str], QuotaState] = {}
        self._closed = False

    @property
    def registry(self) -> PolicyRegistry:
        return self._registry

    @property
    def resolver(self) -> PartitionKeyResolver:
        return self._resolver

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state_count(self) -> int:
        return len(self._states)

    def _stripe(self, policy_name: str, key: str) -> threading.Lock:
        return self._stripes[hash((policy_name, key)) % len(self._stripes)]

    def _now(self, now: float | None) -> float:
        return self._clock() if now is None else now

    # --- Decisions ---

    def evaluate(
        self,
        policy_name: str,
        identity: CallerIdentity | None,
        now: float | None = None,
    ) -> Decision:
        """
        Evaluate a request from a caller against a named policy.

        Raises:
            UnknownPolicyError: If the policy is not registered
            UnauthorizedRoleError: If a role-based policy does not cover the caller
        """
        identity = identity or CallerIdentity.anonymous()
        policy = self._registry.select(policy_name, identity)
        key = self._resolver.resolve_key(identity)
        return self.try_acquire(policy.name, key, now)

    def try_acquire(self, policy_name: str, key: str, now: float | None = None) -> Decision:
        """
        Try to admit one request for a partition key.

        Raises:
            UnknownPolicyError: If the policy is not registered
        """
        policy = self._registry.resolve(policy_name)
        now = self._now(now)

        with self._stripe(policy.name, key):
            if self._closed:
                return self._rejected(policy, key, None, REASON_SHUTDOWN)

            state = self._states.get((policy.name, key))
            if state is None:
                state = QuotaState(policy_name=policy.name, partition_key=key, window_start=now)
                self._states[(policy.name, key)] = state

            self._advance(state, policy, now)
            state.last_seen = now

            if state.count < policy.permit_limit:
                state.count += 1
                logger.debug(
                    f"Allowed {key} on {policy.name} ({state.count}/{policy.permit_limit})"
                )
                return Decision(
                    outcome=DecisionOutcome.ALLOWED,
                    policy_name=policy.name,
                    partition_key=key,
                    limit=policy.permit_limit,
                    remaining=policy.permit_limit - state.count,
                )

            if len(state.queue) < policy.queue_limit:
                ticket = QueueTicket(
                    policy_name=policy.name,
                    partition_key=key,
                    enqueued_at=now,
                    deadline=now + policy.window_seconds,
                )
                state.queue.append(ticket)
                logger.debug(
                    f"Queued {key} on {policy.name} ({len(state.queue)}/{policy.queue_limit})"
                )
                return Decision(
                    outcome=DecisionOutcome.QUEUED,
                    policy_name=policy.name,
                    partition_key=key,
                    limit=policy.permit_limit,
                    remaining=0,
                    retry_after=self._window_remaining(state, policy, now),
                    ticket=ticket,
                )

            retry_after = self._window_remaining(state, policy, now)
            logger.debug(f"Rejected {key} on {policy.name}, retry in {retry_after:.2f}s")
            return self._rejected(policy, key, retry_after, REASON_QUOTA_EXCEEDED)

    def check(self, policy_name: str, key: str, now: float | None = None) -> Decision:
        """Report what try_acquire would decide, without consuming quota."""
        policy = self._registry.resolve(policy_name)
        now = self._now(now)

        with self._stripe(policy.name, key):
            if self._closed:
                return self._rejected(policy, key, None, REASON_SHUTDOWN)

            state = self._states.get((policy.name, key))
            if state is None:
                return Decision(
                    outcome=DecisionOutcome.ALLOWED,
                    policy_name=policy.name,
                    partition_key=key,
                    limit=policy.permit_limit,
                    remaining=policy.permit_limit,
                )

            self._advance(state, policy, now)
            remaining = policy.permit_limit - state.count
            if remaining > 0:
                outcome = DecisionOutcome.ALLOWED
                retry_after = None
                reason = None
            elif len(state.queue) < policy.queue_limit:
                outcome = DecisionOutcome.QUEUED
                retry_after = self._window_remaining(state, policy, now)
                reason = None
            else:
                outcome = DecisionOutcome.REJECTED
                retry_after = self._window_remaining(state, policy, now)
                reason = REASON_QUOTA_EXCEEDED

            return Decision(
                outcome=outcome,
                policy_name=policy.name,
                partition_key=key,
                limit=policy.permit_limit,
                remaining=remaining,
                retry_after=retry_after,
                reason=reason,
            )

    # --- Queued tickets ---

    def poll(self, ticket: QueueTicket, now: float | None = None) -> Decision:
        """Current decision for a queued ticket, releasing or expiring it if due."""
        policy = self._registry.resolve(ticket.policy_name)
        now = self._now(now)

        with self._stripe(ticket.policy_name, ticket.partition_key):
            state = self._states.get((ticket.policy_name, ticket.partition_key))
            if ticket.pending:
                if state is not None:
                    self._advance(state, policy, now)
                else:
                    ticket._resolve(
                        TicketStatus.REJECTED,
                        now,
                        REASON_SHUTDOWN if self._closed else REASON_QUEUE_TIMEOUT,
                    )
            return self._ticket_decision(ticket, policy, state, now)

    def cancel(self, ticket: QueueTicket) -> bool:
        """
        Withdraw a queued ticket.

        Returns:
            True if the ticket was still pending and is now rejected
        """
        with self._stripe(ticket.policy_name, ticket.partition_key):
            if not ticket.pending:
                return False
            state = self._states.get((ticket.policy_name, ticket.partition_key))
            if state is not None:
                try:
                    state.queue.remove(ticket)
                except ValueError:
                    pass
            ticket._resolve(TicketStatus.REJECTED, self._clock(), REASON_CANCELLED)
            logger.debug(f"Cancelled ticket {ticket.ticket_id} for {ticket.partition_key}")
            return True

    async def wait(self, decision: Decision) -> Decision:
        """
        Wait until a queued decision becomes Allowed or Rejected.

        Non-queued decisions are returned unchanged. The wait is bounded by
        the ticket deadline (one window). If the waiting task is cancelled,
        the ticket is withdrawn before CancelledError propagates.
        """
        if not decision.queued or decision.ticket is None:
            return decision

        ticket = decision.ticket
        current = decision
        try:
            while current.queued:
                delay = min(
                    max(current.retry_after or 0.0, self._min_poll_interval),
                    self._max_poll_interval,
                )
                await asyncio.sleep(delay)
                current = self.poll(ticket)
        except asyncio.CancelledError:
            self.cancel(ticket)
            raise
        return current

    # --- Maintenance ---

    def sweep(self, now: float | None = None) -> int:
        """
        Roll over expired windows, expire overdue tickets and evict idle states.

        Returns:
            Number of evicted states
        """
        now = self._now(now)
        evicted = 0

        for (policy_name, key), state in list(self._states.items()):
            policy = self._registry.resolve(policy_name)
            with self._stripe(policy_name, key):
                if self._states.get((policy_name, key)) is not state:
                    continue
                self._advance(state, policy, now)
                idle_for = now - state.last_seen
                if not state.queue and idle_for >= policy.window_seconds * self._idle_windows:
                    del self._states[(policy_name, key)]
                    evicted += 1

        if evicted:
            logger.debug(f"Evicted {evicted} idle quota states")
        return evicted

    def shutdown(self) -> int:
        """
        Stop admitting requests and reject every pending ticket.

        Returns:
            Number of tickets rejected
        """
        self._closed = True
        now = self._clock()
        rejected = 0

        # Holding every stripe guarantees no call is mid-way through enqueueing.
        for lock in self._stripes:
            lock.acquire()
        try:
            for state in self._states.values():
                while state.queue:
                    ticket = state.queue.popleft()
                    ticket._resolve(TicketStatus.REJECTED, now, REASON_SHUTDOWN)
                    rejected += 1
        finally:
            for lock in reversed(self._stripes):
                lock.release()

        logger.info(f"Admission controller shut down, rejected {rejected} queued requests")
        return rejected

    def snapshot(self, policy_name: str, key: str) -> dict[str, Any] | None:
        with self._stripe(policy_name, key):
            state = self._states.get((policy_name, key))
            return state.to_dict() if state is not None else None

    # --- Internals (caller holds the stripe lock) ---

    def _advance(self, state: QuotaState, policy: Policy, now: float) -> None:
        window_end = state.window_end(policy)
        if now >= window_end:
            state.window_start = now
            state.count = 0
            self._release(state, policy, now, freed_at=window_end)
        self._expire(state, now)

    def _release(self, state: QuotaState, policy: Policy, now: float, freed_at: float) -> None:
        if not state.queue:
            return

        # Tickets that ran out of time before capacity freed up
        for ticket in [t for t in state.queue if t.deadline < freed_at]:
            state.queue.remove(ticket)
            ticket._resolve(TicketStatus.REJECTED, now, REASON_QUEUE_TIMEOUT)

        while state.queue and state.count < policy.permit_limit:
            if policy.queue_order is QueueOrder.OLDEST_FIRST:
                ticket = state.queue.popleft()
            else:
                ticket = state.queue.pop()
            state.count += 1
            ticket._resolve(TicketStatus.ALLOWED, now)
            logger.debug(f"Released ticket {ticket.ticket_id} for {state.partition_key}")

    def _expire(self, state: QuotaState, now: float) -> None:
        if not state.queue:
            return
        for ticket in [t for t in state.queue if t.deadline <= now]:
            state.queue.remove(ticket)
            ticket._resolve(TicketStatus.REJECTED, now, REASON_QUEUE_TIMEOUT)

    def _window_remaining(self, state: QuotaState, policy: Policy, now: float) -> float:
        remaining = state.window_end(policy) - now
        return min(policy.window_seconds, max(0.0, remaining))

    def _rejected(
        self,
        policy: Policy,
        key: str,
        retry_after: float | None,
        reason: str,
    ) -> Decision:
        return Decision(
            outcome=DecisionOutcome.REJECTED,
            policy_name=policy.name,
            partition_key=key,
            limit=policy.permit_limit,
            remaining=0,
            retry_after=retry_after,
            reason=reason,
        )

    def _ticket_decision(
        self,
        ticket: QueueTicket,
        policy: Policy,
        state: QuotaState | None,
        now: float,
    ) -> Decision:
        if ticket.status is TicketStatus.ALLOWED:
            remaining = policy.permit_limit - state.count if state is not None else 0
            return Decision(
                outcome=DecisionOutcome.ALLOWED,
                policy_name=policy.name,
                partition_key=ticket.partition_key,
                limit=policy.permit_limit,
                remaining=max(0, remaining),
                ticket=ticket,
            )

        if ticket.status is TicketStatus.REJECTED:
            retry_after = None
            if state is not None and ticket.reason != REASON_SHUTDOWN:
                retry_after = self._window_remaining(state, policy, now)
            return Decision(
                outcome=DecisionOutcome.REJECTED,
                policy_name=policy.name,
                partition_key=ticket.partition_key,
                limit=policy.permit_limit,
                remaining=0,
                retry_after=retry_after,
                reason=ticket.reason,
                ticket=ticket,
            )

        # Still pending: next check at the window end or the ticket deadline
        next_check = min(state.window_end(policy), ticket.deadline) if state else ticket.deadline
        return Decision(
            outcome=DecisionOutcome.QUEUED,
            policy_name=policy.name,
            partition_key=ticket.partition_key,
            limit=policy.permit_limit,
            remaining=0,
            retry_after=max(0.0, next_check - now),
            ticket=ticket,
        )
