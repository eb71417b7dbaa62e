"""Security utilities: bearer token verification and caller identity extraction."""

import logging
from typing import Any

from fastapi import Request
from jose import JWTError, jwt

from admission.identity import CallerIdentity

logger = logging.getLogger(__name__)


# Claim names that may carry roles. The URI form is what ASP.NET Identity
# issues for ClaimTypes.Role.
ROLE_CLAIMS = (
    "role",
    "roles",
    "http://schemas.microsoft.com/ws/2008/06/identity/claims/role",
)


class TokenValidationError(Exception):
    """Raised when a bearer token fails verification."""

    pass


class TokenVerifier:
    """
    Verifies signed bearer tokens and turns their claims into identities.

    Tokens are issued elsewhere; this class only checks signature, expiry
    and the optional audience/issuer.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: str | None = None,
        issuer: str | None = None,
        role_claims: tuple[str, ...] = ROLE_CLAIMS,
    ) -> None:
        """
        Initialize token verifier.

        Args:
            secret: Signing key
            algorithm: Expected signing algorithm
            audience: Required "aud" claim, if any
            issuer: Required "iss" claim, if any
            role_claims: Claim names to read roles from
        """
        if not secret:
            raise ValueError("Token verifier requires a secret")
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._issuer = issuer
        self._role_claims = role_claims

    def decode(self, token: str) -> dict[str, Any]:
        """
        Verify a token and return its claims.

        Raises:
            TokenValidationError: If the token is malformed, expired or forged
        """
        if not token:
            raise TokenValidationError("Empty token")
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_aud": self._audience is not None},
            )
        except JWTError as e:
            raise TokenValidationError(str(e)) from e

    def identity(self, token: str, ip: str | None = None) -> CallerIdentity:
        """
        Verify a token and build the caller identity from it.

        Raises:
            TokenValidationError: If verification fails
        """
        claims = self.decode(token)
        return CallerIdentity.from_claims(claims, ip=ip, role_claims=self._role_claims)


def bearer_token(request: Request) -> str | None:
    """Extract the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()  # Strip "Bearer "
    return token or None


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str | None:
    """
    Caller IP address.

    With ``trust_forwarded_for`` the first X-Forwarded-For hop is used;
    enable it only behind a proxy that overwrites that header.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = _strip_port(forwarded.split(",")[0].strip())
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def _strip_port(address: str) -> str:
    """Drop a trailing port: "1.2.3.4:5678" and "[::1]:5678" keep only the host."""
    if address.startswith("[") and "]" in address:
        return address[1 : address.index("]")]
    if address.count(":") == 1:
        return address.split(":", 1)[0]
    return address


def identity_from_request(
    request: Request,
    verifier: TokenVerifier | None = None,
    trust_forwarded_for: bool = False,
) -> CallerIdentity:
    """
    Build the caller identity for a request.

    Never raises: a missing verifier, missing token or invalid token all
    produce an anonymous identity keyed by the caller IP.
    """
    ip = client_ip(request, trust_forwarded_for)
    token = bearer_token(request)

    if token is None or verifier is None:
        return CallerIdentity.anonymous(ip)

    try:
        return verifier.identity(token, ip=ip)
    except TokenValidationError as e:
        logger.warning(f"Invalid bearer token from {ip or 'unknown'}: {e}")
        return CallerIdentity.anonymous(ip)
