"""
Test cases for tunnel address allocation.
"""

import pytest

from core.errors import PoolExhaustedError
from core.ipam import allocate_ip, host_offset, pool_ceiling
from core.models import PeerRecord, PeerStatus


def peer(name, address, status=PeerStatus.ACTIVE):
    return PeerRecord(name=name, address=address, public_key="k" + name,
                      issued_at="2024-05-01T12:00:00+00:00", status=status)


class TestAllocateIp:
    """Test cases for allocate_ip."""

    def test_first_client_gets_offset_two(self):
        assert allocate_ip([], "10.66.66.0/24") == "10.66.66.2"

    def test_next_after_highest(self):
        peers = [peer("a", "10.66.66.2"), peer("b", "10.66.66.7")]
        assert allocate_ip(peers, "10.66.66.0/24") == "10.66.66.8"

    def test_gaps_are_not_filled(self):
        peers = [peer("a", "10.66.66.2"), peer("c", "10.66.66.4")]
        assert allocate_ip(peers, "10.66.66.0/24") == "10.66.66.5"

    def test_revoked_records_are_ignored(self):
        peers = [peer("a", "10.8.0.2"), peer("b", "10.8.0.3", PeerStatus.REVOKED)]
        assert allocate_ip(peers, "10.8.0.0/24") == "10.8.0.3"

    def test_address_outside_subnet_is_ignored(self):
        peers = [peer("a", "192.168.1.50")]
        assert allocate_ip(peers, "10.66.66.0/24") == "10.66.66.2"

    def test_pool_exhausted(self):
        # /29 : offsets 2..6 attribuables
        peers = [peer(str(i), f"10.0.0.{i}") for i in range(2, 7)]
        with pytest.raises(PoolExhaustedError):
            allocate_ip(peers, "10.0.0.0/29")

    def test_last_usable_offset(self):
        peers = [peer("a", "10.0.0.5")]
        assert allocate_ip(peers, "10.0.0.0/29") == "10.0.0.6"

    def test_max_clients_ceiling(self):
        peers = [peer(str(i), f"10.8.0.{i}") for i in range(2, 12)]
        with pytest.raises(PoolExhaustedError, match="Maximum number of clients"):
            allocate_ip(peers, "10.8.0.0/24", max_clients=10)

    def test_max_clients_counts_active_only(self):
        peers = [peer("a", "10.8.0.2", PeerStatus.REVOKED)]
        assert allocate_ip(peers, "10.8.0.0/24", max_clients=1) == "10.8.0.2"

    def test_reserved_addresses_raise_the_high_water_mark(self):
        peers = [peer("a", "10.66.66.2")]
        reserved = ["10.66.66.9", "192.168.1.1", "not-an-ip"]
        assert allocate_ip(peers, "10.66.66.0/24", reserved=reserved) == "10.66.66.10"

    def test_reserved_addresses_do_not_count_as_clients(self):
        assert allocate_ip([], "10.8.0.0/24", max_clients=1, reserved=["10.8.0.2"]) == "10.8.0.3"


class TestHelpers:
    """Test cases for offset helpers."""

    def test_pool_ceiling(self):
        import ipaddress
        assert pool_ceiling(ipaddress.ip_network("10.66.66.0/24")) == 254

    def test_host_offset(self):
        import ipaddress
        net = ipaddress.ip_network("10.66.66.0/24")
        assert host_offset("10.66.66.9", net) == 9
        assert host_offset("10.66.66.9/32", net) == 9
        assert host_offset("10.67.0.1", net) is None
