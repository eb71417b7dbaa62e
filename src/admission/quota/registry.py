"""Registry of named admission policies."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterator, Mapping

from admission.identity import CallerIdentity
from admission.quota.errors import (
    DuplicatePolicyError,
    PolicyConfigError,
    UnknownPolicyError,
)
from admission.quota.policy import (
    BUILTIN_POLICIES,
    BUILTIN_ROLE_POLICIES,
    Policy,
    RoleBasedPolicy,
)

logger = logging.getLogger(__name__)


class PolicyRegistry:
    """
    Holds named policies and role-keyed policy groups.

    Registration takes a lock; lookups do not, since the registry is
    populated at startup and only read afterwards.
    """

    def __init__(self) -> None:
        self._policies: dict[str, Policy] = {}
        self._role_policies: dict[str, RoleBasedPolicy] = {}
        self._lock = threading.Lock()

    def register(self, policy: Policy) -> None:
        """
        Register a concrete policy.

        Raises:
            DuplicatePolicyError: If the name is already taken
        """
        with self._lock:
            self._check_free(policy.name)
            self._policies[policy.name] = policy
        logger.debug(f"Registered policy {policy.name}")

    def register_role_policy(self, role_policy: RoleBasedPolicy) -> None:
        """
        Register a role-keyed policy and each of its sub-policies.

        Raises:
            DuplicatePolicyError: If the group name or any sub-policy name is taken
        """
        with self._lock:
            self._check_free(role_policy.name)
            for sub in role_policy.by_role.values():
                self._check_free(sub.name)
            for sub in role_policy.by_role.values():
                self._policies[sub.name] = sub
            self._role_policies[role_policy.name] = role_policy
        logger.debug(
            f"Registered role policy {role_policy.name} "
            f"({', '.join(r.value for r in role_policy.by_role)})"
        )

    def _check_free(self, name: str) -> None:
        if name in self._policies or name in self._role_policies:
            raise DuplicatePolicyError(name)

    def resolve(self, name: str) -> Policy:
        """
        Look up a concrete policy by name.

        Raises:
            UnknownPolicyError: If no concrete policy has this name
        """
        policy = self._policies.get(name)
        if policy is not None:
            return policy
        if name in self._role_policies:
            raise UnknownPolicyError(name, "role-based policy; select it with a caller identity")
        raise UnknownPolicyError(name)

    def select(self, name: str, identity: CallerIdentity) -> Policy:
        """
        Pick the concrete policy that applies to a caller.

        Raises:
            UnknownPolicyError: If the name is not registered
            UnauthorizedRoleError: If a role-based policy has no sub-policy
                for the caller's role
        """
        role_policy = self._role_policies.get(name)
        if role_policy is not None:
            return role_policy.policy_for(identity)
        return self.resolve(name)

    def is_role_based(self, name: str) -> bool:
        return name in self._role_policies

    def names(self) -> list[str]:
        """Public policy names (role sub-policies are not listed)."""
        sub_names = {
            sub.name for rp in self._role_policies.values() for sub in rp.by_role.values()
        }
        plain = [n for n in self._policies if n not in sub_names]
        return sorted(plain + list(self._role_policies))

    def policies(self) -> list[Policy]:
        """All concrete policies, including role sub-policies."""
        return list(self._policies.values())

    def describe(self) -> list[dict[str, Any]]:
        result = []
        for name in self.names():
            if name in self._role_policies:
                entry = self._role_policies[name].to_dict()
                entry["type"] = "role"
            else:
                entry = self._policies[name].to_dict()
                entry["type"] = "fixed_window"
            result.append(entry)
        return result

    def __contains__(self, name: object) -> bool:
        return name in self._policies or name in self._role_policies

    def __len__(self) -> int:
        return len(self.names())

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    @classmethod
    def with_builtins(cls) -> PolicyRegistry:
        """Registry populated with the built-in workshop policies."""
        registry = cls()
        for policy in BUILTIN_POLICIES.values():
            registry.register(policy)
        for role_policy in BUILTIN_ROLE_POLICIES.values():
            registry.register_role_policy(role_policy)
        return registry

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyRegistry:
        """
        Build a registry from plain configuration data.

        Expected shape::

            {"policies": {"<name>": {...}}, "role_policies": {"<name>": {"<Role>": {...}}}}

        Raises:
            PolicyConfigError: On malformed definitions
            DuplicatePolicyError: On name clashes
        """
        if not isinstance(data, Mapping):
            raise PolicyConfigError("Policy configuration must be an object")
        unknown = set(data) - {"policies", "role_policies"}
        if unknown:
            raise PolicyConfigError(f"Unknown policy configuration keys: {sorted(unknown)}")

        policies = data.get("policies") or {}
        role_policies = data.get("role_policies") or {}
        for section, value in (("policies", policies), ("role_policies", role_policies)):
            if not isinstance(value, Mapping):
                raise PolicyConfigError(f"'{section}' must be an object of named policies")

        registry = cls()
        for name, definition in policies.items():
            registry.register(Policy.from_dict(name, definition))
        for name, definition in role_policies.items():
            registry.register_role_policy(RoleBasedPolicy.from_dict(name, definition))
        return registry

    @classmethod
    def from_file(cls, path: str | Path) -> PolicyRegistry:
        """
        Load policies from a JSON file.

        Raises:
            PolicyConfigError: If the file is unreadable or malformed
        """
        path = Path(path)
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyConfigError(f"Failed to load policies from {path}: {e}") from e
        registry = cls.from_dict(data)
        logger.info(f"Loaded {len(registry)} policies from {path}")
        return registry
