"""Caller identity types used for partitioning and role-based policies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable


class Role(str, Enum):
    """
    Recognized workshop roles.

    Declaration order is the precedence order: when a caller carries
    several roles, the first one listed here wins.
    """

    ADMIN = "Admin"
    RECEPCIONISTA = "Recepcionista"

    @classmethod
    def parse(cls, value: Any) -> Role | None:
        """Parse a claim value into a Role (case-insensitive), or None."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        candidate = value.strip().lower()
        for role in cls:
            if role.value.lower() == candidate:
                return role
        return None

    @property
    def precedence(self) -> int:
        """Lower value means higher privilege."""
        return list(Role).index(self)


@dataclass(frozen=True)
class CallerIdentity:
    """Identity of the caller as seen by admission control."""

    ip: str | None = None
    """Raw caller IP address as reported by the transport."""

    roles: frozenset[Role] = field(default_factory=frozenset)
    """Recognized roles from a verified token."""

    subject: str | None = None
    """Token subject, set only for verified tokens."""

    @property
    def authenticated(self) -> bool:
        return self.subject is not None or bool(self.roles)

    @property
    def primary_role(self) -> Role | None:
        """Highest-privilege role, or None when no recognized role is present."""
        if not self.roles:
            return None
        return min(self.roles, key=lambda r: r.precedence)

    @classmethod
    def anonymous(cls, ip: str | None = None) -> CallerIdentity:
        return cls(ip=ip)

    @classmethod
    def from_claims(
        cls,
        claims: dict[str, Any],
        ip: str | None = None,
        role_claims: Iterable[str] = ("role",),
    ) -> CallerIdentity:
        """
        Build an identity from verified token claims.

        Role claims may hold a single string or a list. Unrecognized role
        names are dropped.
        """
        roles: set[Role] = set()
        for claim in role_claims:
            value = claims.get(claim)
            if value is None:
                continue
            values = value if isinstance(value, (list, tuple, set)) else [value]
            for item in values:
                role = Role.parse(item)
                if role is not None:
                    roles.add(role)

        subject = claims.get("sub")
        return cls(
            ip=ip,
            roles=frozenset(roles),
            subject=str(subject) if subject is not None else "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "roles": sorted(r.value for r in self.roles),
            "subject": self.subject,
            "authenticated": self.authenticated,
        }
