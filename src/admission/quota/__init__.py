"""
Admission control for request rate limiting.

Provides named fixed-window policies, role-keyed policy selection,
per-caller partitioning and a concurrency-safe admission controller.
"""

from admission.quota.controller import (
    AdmissionController,
    Decision,
    DecisionOutcome,
    QueueTicket,
    QuotaState,
    TicketStatus,
)
from admission.quota.errors import (
    AdmissionError,
    DuplicatePolicyError,
    PolicyConfigError,
    UnauthorizedRoleError,
    UnknownPolicyError,
)
from admission.quota.manager import AdmissionManager, load_policies
from admission.quota.partition import PartitionKeyResolver, normalize_ip
from admission.quota.policy import (
    BUILTIN_POLICIES,
    BUILTIN_ROLE_POLICIES,
    Policy,
    QueueOrder,
    RoleBasedPolicy,
)
from admission.quota.registry import PolicyRegistry

__all__ = [
    "AdmissionController",
    "AdmissionError",
    "AdmissionManager",
    "BUILTIN_POLICIES",
    "BUILTIN_ROLE_POLICIES",
    "Decision",
    "DecisionOutcome",
    "DuplicatePolicyError",
    "PartitionKeyResolver",
    "Policy",
    "PolicyConfigError",
    "PolicyRegistry",
    "QueueOrder",
    "QueueTicket",
    "QuotaState",
    "RoleBasedPolicy",
    "TicketStatus",
    "UnauthorizedRoleError",
    "UnknownPolicyError",
    "load_policies",
    "normalize_ip",
]
