"""FastAPI dependencies that put routes behind admission policies."""

import logging
from typing import Awaitable, Callable

from fastapi import HTTPException, Request, Response, status

from admission.identity import CallerIdentity
from admission.quota import (
    AdmissionManager,
    Decision,
    UnauthorizedRoleError,
    UnknownPolicyError,
)
from admission.quota.controller import REASON_SHUTDOWN
from admission.security import identity_from_request

logger = logging.getLogger(__name__)


def get_admission_manager(request: Request) -> AdmissionManager:
    """The application's admission manager."""
    return request.app.state.admission


def get_caller_identity(request: Request) -> CallerIdentity:
    """Caller identity from the bearer token and client address."""
    return identity_from_request(
        request,
        verifier=request.app.state.token_verifier,
        trust_forwarded_for=request.app.state.settings.trust_forwarded_for,
    )


def require_admission(policy_name: str) -> Callable[[Request, Response], Awaitable[Decision]]:
    """
    Dependency factory enforcing a named policy.

    Usage in route:
        @router.get("/vehicles", dependencies=[Depends(require_admission("readCommon"))])
        async def list_vehicles():
            ...

    Rejected requests get 429 with Retry-After; callers whose role has no
    sub-policy get 403; an unregistered policy name is a server error.
    """

    async def dependency(request: Request, response: Response) -> Decision:
        manager = get_admission_manager(request)
        identity = get_caller_identity(request)

        try:
            decision = await manager.evaluate(policy_name, identity)
        except UnauthorizedRoleError as e:
            logger.warning(f"Refused {identity.ip or 'unknown'} on {policy_name}: {e}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": "role_not_permitted", "policy": policy_name},
            )
        except UnknownPolicyError as e:
            logger.error(f"Route guarded by unregistered policy: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"error": "admission_policy_missing", "policy": policy_name},
            )

        if decision.rejected:
            if decision.reason == REASON_SHUTDOWN:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail={"error": "shutting_down"},
                )
            headers = {"X-RateLimit-Limit": str(decision.limit), "X-RateLimit-Remaining": "0"}
            if decision.retry_after_header is not None:
                headers["Retry-After"] = str(decision.retry_after_header)
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "error": "rate_limited",
                    "policy": decision.policy_name,
                    "reason": decision.reason,
                    "retry_after": decision.retry_after_header,
                },
                headers=headers,
            )

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return decision

    return dependency
