"""Admission control errors."""


class AdmissionError(Exception):
    """Base class for admission control errors."""

    pass


class PolicyConfigError(AdmissionError, ValueError):
    """Raised when policy configuration data is malformed."""

    pass


class DuplicatePolicyError(AdmissionError):
    """Raised when a policy name is registered twice."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Policy already registered: {name}")
        self.name = name


class UnknownPolicyError(AdmissionError):
    """Raised when evaluating against a policy name that was never registered."""

    def __init__(self, name: str, hint: str = "") -> None:
        message = f"Unknown policy: {name}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)
        self.name = name


class UnauthorizedRoleError(AdmissionError):
    """Raised when a role-based policy has no sub-policy for the caller's role."""

    def __init__(self, policy_name: str, role: str | None) -> None:
        super().__init__(
            f"No sub-policy of '{policy_name}' for role: {role or '<none>'}"
        )
        self.policy_name = policy_name
        self.role = role
