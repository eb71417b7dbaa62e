"""Tests for partition key resolution."""

import pytest

from admission.identity import CallerIdentity, Role
from admission.quota import PartitionKeyResolver, normalize_ip


class TestNormalizeIp:
    """Tests for normalize_ip."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1.2.3.4", "1.2.3.4"),
            (" 1.2.3.4 ", "1.2.3.4"),
            ("::ffff:1.2.3.4", "1.2.3.4"),
            ("2001:DB8:0:0:0:0:0:1", "2001:db8::1"),
            ("[::1]", "::1"),
        ],
    )
    def test_canonical_forms(self, raw: str, expected: str) -> None:
        assert normalize_ip(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "testclient", "1.2.3", "999.1.1.1"])
    def test_invalid(self, raw) -> None:
        assert normalize_ip(raw) is None


class TestPartitionKeyResolver:
    """Tests for PartitionKeyResolver."""

    @pytest.fixture
    def resolver(self) -> PartitionKeyResolver:
        return PartitionKeyResolver()

    def test_role_partition(self, resolver: PartitionKeyResolver) -> None:
        identity = CallerIdentity(ip="1.2.3.4", roles=frozenset({Role.RECEPCIONISTA}))
        assert resolver.resolve_key(identity) == "role:Recepcionista"

    def test_role_partition_uses_primary_role(self, resolver: PartitionKeyResolver) -> None:
        identity = CallerIdentity(roles=frozenset({Role.RECEPCIONISTA, Role.ADMIN}))
        assert resolver.resolve_key(identity) == "role:Admin"

    def test_ip_partition(self, resolver: PartitionKeyResolver) -> None:
        assert resolver.resolve_key(CallerIdentity.anonymous("1.2.3.4")) == "ip:1.2.3.4"

    def test_mapped_ipv6_shares_ipv4_partition(self, resolver: PartitionKeyResolver) -> None:
        v4 = resolver.resolve_key(CallerIdentity.anonymous("1.2.3.4"))
        mapped = resolver.resolve_key(CallerIdentity.anonymous("::ffff:1.2.3.4"))
        assert v4 == mapped

    def test_authenticated_without_role_uses_ip(self, resolver: PartitionKeyResolver) -> None:
        identity = CallerIdentity(ip="5.6.7.8", subject="someone")
        assert resolver.resolve_key(identity) == "ip:5.6.7.8"

    def test_anonymous(self, resolver: PartitionKeyResolver) -> None:
        assert resolver.resolve_key(None) == "anonymous"
        assert resolver.resolve_key(CallerIdentity()) == "anonymous"
        assert resolver.resolve_key(CallerIdentity.anonymous("not-an-ip")) == "anonymous"

    def test_custom_anonymous_key(self) -> None:
        resolver = PartitionKeyResolver(anonymous_key="unknown-caller")

        assert resolver.anonymous_key == "unknown-caller"
        assert resolver.resolve_key(None) == "unknown-caller"
