"""Admission policies: fixed-window quota rules and role-keyed policy groups."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from admission.identity import CallerIdentity, Role
from admission.quota.errors import PolicyConfigError, UnauthorizedRoleError


class QueueOrder(str, Enum):
    """Order in which queued requests are released."""

    OLDEST_FIRST = "oldest_first"
    NEWEST_FIRST = "newest_first"

    @classmethod
    def parse(cls, value: Any) -> QueueOrder:
        """Accept enum members, snake_case or PascalCase names."""
        if isinstance(value, QueueOrder):
            return value
        normalized = str(value).replace("_", "").replace("-", "").lower()
        for order in cls:
            if order.value.replace("_", "") == normalized:
                return order
        raise PolicyConfigError(f"Invalid queue order: {value!r}")


@dataclass(frozen=True)
class Policy:
    """
    Fixed-window admission rule.

    At most ``permit_limit`` requests are admitted per ``window_seconds``
    for each partition key. Up to ``queue_limit`` further requests may wait
    for the next window; with ``queue_limit == 0`` overflow is rejected
    immediately.
    """

    name: str
    """Unique policy name."""

    permit_limit: int
    """Requests admitted per window."""

    window_seconds: float
    """Window length in seconds."""

    queue_limit: int = 0
    """Maximum number of waiting requests per partition."""

    queue_order: QueueOrder = QueueOrder.OLDEST_FIRST
    """Release order for waiting requests."""

    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise PolicyConfigError("Policy name must not be empty")
        if isinstance(self.permit_limit, bool) or not isinstance(self.permit_limit, int):
            raise PolicyConfigError(f"{self.name}: permit_limit must be an integer")
        if self.permit_limit <= 0:
            raise PolicyConfigError(f"{self.name}: permit_limit must be positive")
        if isinstance(self.window_seconds, bool) or not isinstance(self.window_seconds, (int, float)):
            raise PolicyConfigError(f"{self.name}: window_seconds must be a number")
        if not math.isfinite(self.window_seconds) or self.window_seconds <= 0:
            raise PolicyConfigError(f"{self.name}: window_seconds must be a positive finite number")
        if isinstance(self.queue_limit, bool) or not isinstance(self.queue_limit, int):
            raise PolicyConfigError(f"{self.name}: queue_limit must be an integer")
        if self.queue_limit < 0:
            raise PolicyConfigError(f"{self.name}: queue_limit must not be negative")

    def renamed(self, name: str) -> Policy:
        return Policy(
            name=name,
            permit_limit=self.permit_limit,
            window_seconds=self.window_seconds,
            queue_limit=self.queue_limit,
            queue_order=self.queue_order,
            description=self.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "permit_limit": self.permit_limit,
            "window_seconds": self.window_seconds,
            "queue_limit": self.queue_limit,
            "queue_order": self.queue_order.value,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> Policy:
        if not isinstance(data, Mapping):
            raise PolicyConfigError(f"{name}: policy definition must be an object")
        if "permit_limit" not in data or "window_seconds" not in data:
            raise PolicyConfigError(
                f"{name}: permit_limit and window_seconds are required"
            )
        try:
            window = float(data["window_seconds"])
        except (TypeError, ValueError) as e:
            raise PolicyConfigError(f"{name}: invalid window_seconds: {e}") from e
        return cls(
            name=name,
            permit_limit=data["permit_limit"],
            window_seconds=window,
            queue_limit=data.get("queue_limit", 0),
            queue_order=QueueOrder.parse(data.get("queue_order", QueueOrder.OLDEST_FIRST)),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class RoleBasedPolicy:
    """
    Policy group that picks a sub-policy from the caller's primary role.

    Callers without a recognized role, or whose role has no sub-policy,
    are refused with UnauthorizedRoleError.
    """

    name: str
    by_role: Mapping[Role, Policy] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise PolicyConfigError("Policy name must not be empty")
        if not self.by_role:
            raise PolicyConfigError(f"{self.name}: at least one role sub-policy is required")
        # Copied into a read-only view; the group is immutable once built
        object.__setattr__(self, "by_role", MappingProxyType(dict(self.by_role)))

    @staticmethod
    def sub_policy_name(name: str, role: Role) -> str:
        return f"{name}:{role.value}"

    def policy_for(self, identity: CallerIdentity) -> Policy:
        role = identity.primary_role
        if role is None or role not in self.by_role:
            raise UnauthorizedRoleError(self.name, role.value if role else None)
        return self.by_role[role]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "roles": {
                role.value: policy.to_dict()
                for role, policy in sorted(self.by_role.items(), key=lambda i: i[0].precedence)
            },
        }

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> RoleBasedPolicy:
        """
        Build from ``{"<Role>": {policy fields}, ...}``.

        Sub-policies are named ``"<name>:<Role>"``.
        """
        if not isinstance(data, Mapping):
            raise PolicyConfigError(f"{name}: role policy definition must be an object")
        by_role: dict[Role, Policy] = {}
        for role_name, sub in data.items():
            role = Role.parse(role_name)
            if role is None:
                raise PolicyConfigError(f"{name}: unrecognized role '{role_name}'")
            by_role[role] = Policy.from_dict(cls.sub_policy_name(name, role), sub)
        return cls(name=name, by_role=by_role)

    @classmethod
    def build(
        cls,
        name: str,
        limits: Mapping[Role, Policy],
        description: str = "",
    ) -> RoleBasedPolicy:
        """Build from policies, renaming each to its derived sub-policy name."""
        return cls(
            name=name,
            by_role={
                role: policy.renamed(cls.sub_policy_name(name, role))
                for role, policy in limits.items()
            },
            description=description,
        )


# Built-in workshop policies
READ_COMMON_POLICY = Policy(
    name="readCommon",
    permit_limit=50,
    window_seconds=60,
    queue_limit=0,
    queue_order=QueueOrder.OLDEST_FIRST,
    description="Shared read quota partitioned by caller",
)

WRITE_BY_ROLE_POLICY = RoleBasedPolicy.build(
    name="writeByRole",
    limits={
        Role.ADMIN: Policy(name="admin", permit_limit=20, window_seconds=60),
        Role.RECEPCIONISTA: Policy(name="recepcionista", permit_limit=5, window_seconds=60),
    },
    description="Write quota chosen by the caller's role",
)

BUILTIN_POLICIES: dict[str, Policy] = {
    "readCommon": READ_COMMON_POLICY,
}

BUILTIN_ROLE_POLICIES: dict[str, RoleBasedPolicy] = {
    "writeByRole": WRITE_BY_ROLE_POLICY,
}
