"""Tests for management subnet allocation."""

import ipaddress

import pytest

from vdc.errors import AllocationExhausted, ConflictError, ValidationError
from vdc.subnets import check_disjoint, next_free_subnet, validate_subnet


# --- next_free_subnet ---

def test_first_allocation_starts_at_first_octet():
    assert next_free_subnet([], supernet="192.168.0.0/16", first_octet=10) == "192.168.10.0/24"


def test_allocation_skips_used_subnets():
    used = ["192.168.10.0/24", "192.168.11.0/24"]
    assert next_free_subnet(used, supernet="192.168.0.0/16", first_octet=10) == "192.168.12.0/24"


def test_allocation_reuses_gaps():
    """The lowest free /24 wins, even below used ones."""
    used = ["192.168.10.0/24", "192.168.12.0/24"]
    assert next_free_subnet(used, supernet="192.168.0.0/16", first_octet=10) == "192.168.11.0/24"


def test_allocation_avoids_overlapping_wider_networks():
    used = ["192.168.10.0/23"]
    assert next_free_subnet(used, supernet="192.168.0.0/16", first_octet=10) == "192.168.12.0/24"


def test_allocation_ignores_unparseable_entries():
    assert next_free_subnet(["garbage"], supernet="192.168.0.0/16", first_octet=10) == "192.168.10.0/24"


def test_allocation_exhausted():
    used = [f"192.168.{n}.0/24" for n in range(10, 13)]
    with pytest.raises(AllocationExhausted):
        next_free_subnet(used, supernet="192.168.0.0/16", first_octet=10, last_octet=12)


def test_sequential_allocations_are_pairwise_disjoint():
    """200 allocations in a row never hand out overlapping subnets."""
    used: list[str] = []
    for _ in range(200):
        used.append(next_free_subnet(used, supernet="192.168.0.0/16", first_octet=10, last_octet=254))

    networks = [ipaddress.IPv4Network(cidr) for cidr in used]
    assert len(set(used)) == 200
    for i, a in enumerate(networks):
        for b in networks[i + 1:]:
            assert not a.overlaps(b)


def test_allocation_uses_settings_defaults(vdc_settings, monkeypatch):
    monkeypatch.setattr(vdc_settings, "management_supernet", "10.20.0.0/16")
    monkeypatch.setattr(vdc_settings, "subnet_first_octet", 100)
    assert next_free_subnet([]) == "10.20.100.0/24"


# --- validate_subnet / check_disjoint ---

def test_validate_subnet_accepts_slash_24():
    assert validate_subnet("192.168.50.0/24", supernet="192.168.0.0/16") == "192.168.50.0/24"


@pytest.mark.parametrize("cidr", ["192.168.50.0/25", "192.168.50.7/24", "not-a-subnet", "10.0.0.0/24"])
def test_validate_subnet_rejects(cidr):
    with pytest.raises(ValidationError):
        validate_subnet(cidr, supernet="192.168.0.0/16")


def test_check_disjoint_raises_conflict():
    with pytest.raises(ConflictError):
        check_disjoint("192.168.10.0/24", ["192.168.11.0/24", "192.168.10.0/24"])


def test_check_disjoint_passes_for_free_subnet():
    check_disjoint("192.168.12.0/24", ["192.168.11.0/24", "192.168.10.0/24"])
