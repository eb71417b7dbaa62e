"""Partition key derivation from caller identity."""

import ipaddress
import logging

from admission.identity import CallerIdentity

logger = logging.getLogger(__name__)

ANONYMOUS_KEY = "anonymous"


def normalize_ip(value: str | None) -> str | None:
    """
    Canonicalize an IP address string.

    IPv4-mapped IPv6 addresses collapse to dotted IPv4 and IPv6 addresses
    use the compressed lower-case form. Returns None for anything that is
    not an IP address.
    """
    if not value:
        return None
    candidate = value.strip()
    # Bracketed IPv6 as sent by some proxies: "[::1]"
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return ip.compressed


class PartitionKeyResolver:
    """
    Maps a caller identity to the key its quota is tracked under.

    - Callers with a recognized role share the ``role:<Role>`` partition
      of their highest-privilege role.
    - Everyone else is partitioned by canonical IP, ``ip:<addr>``.
    - Callers without a usable IP fall into ``anonymous``.
    """

    def __init__(self, anonymous_key: str = ANONYMOUS_KEY) -> None:
        self._anonymous_key = anonymous_key

    @property
    def anonymous_key(self) -> str:
        return self._anonymous_key

    def resolve_key(self, identity: CallerIdentity | None) -> str:
        """Resolve the partition key. Never raises."""
        if identity is None:
            return self._anonymous_key

        role = identity.primary_role
        if role is not None:
            return f"role:{role.value}"

        ip = normalize_ip(identity.ip)
        if ip is not None:
            return f"ip:{ip}"

        if identity.ip:
            logger.debug(f"Unparsable caller address {identity.ip!r}, using anonymous partition")
        return self._anonymous_key
