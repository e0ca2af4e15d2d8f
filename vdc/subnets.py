"""Management subnet allocation.

Each VDC gets one /24 out of the management supernet. Allocation is a pure
function of the subnets already recorded; persisting the result atomically
with the registry insert is the caller's job (see ``RegistryStore.transaction``).
"""

from __future__ import annotations

import ipaddress
from typing import Iterable

from vdc.config import settings
from vdc.errors import AllocationExhausted, ConflictError, ValidationError


def _supernet(supernet: str | None = None) -> ipaddress.IPv4Network:
    return ipaddress.IPv4Network(supernet or settings.management_supernet)


def _parse(cidr: str) -> ipaddress.IPv4Network | None:
    try:
        return ipaddress.IPv4Network(cidr, strict=False)
    except ValueError:
        return None


def next_free_subnet(
    used: Iterable[str],
    supernet: str | None = None,
    first_octet: int | None = None,
    last_octet: int | None = None,
) -> str:
    """Return the lowest /24 of the supernet not overlapping any used subnet.

    Candidates are ``a.b.N.0/24`` for N from ``first_octet`` upward.

    Raises:
        AllocationExhausted: If every candidate up to ``last_octet`` is taken
    """
    base = _supernet(supernet)
    first = settings.subnet_first_octet if first_octet is None else first_octet
    last = settings.subnet_last_octet if last_octet is None else last_octet

    taken = [net for net in (_parse(cidr) for cidr in used) if net is not None]
    a, b = base.network_address.packed[:2]

    for octet in range(first, last + 1):
        candidate = ipaddress.IPv4Network(f"{a}.{b}.{octet}.0/24")
        if not candidate.subnet_of(base):
            break
        if not any(candidate.overlaps(net) for net in taken):
            return str(candidate)

    raise AllocationExhausted(
        f"No available /24 subnets in {base} (octets {first}-{last} are all in use)",
        suggestions=["destroy unused VDCs"],
    )


def validate_subnet(cidr: str, supernet: str | None = None) -> str:
    """Normalize an operator-supplied management subnet.

    Raises:
        ValidationError: If it is not a /24 network inside the supernet
    """
    try:
        network = ipaddress.IPv4Network(cidr, strict=True)
    except ValueError as e:
        raise ValidationError(f"Invalid management subnet '{cidr}': {e}") from None

    base = _supernet(supernet)
    if network.prefixlen != 24:
        raise ValidationError(f"Management subnet must be a /24, got /{network.prefixlen}")
    if not network.subnet_of(base):
        raise ValidationError(f"Management subnet {network} is outside {base}")
    return str(network)


def check_disjoint(cidr: str, used: Iterable[str]) -> None:
    """Raise ConflictError if ``cidr`` overlaps any recorded subnet."""
    network = ipaddress.IPv4Network(cidr)
    for other in used:
        parsed = _parse(other)
        if parsed is not None and network.overlaps(parsed):
            raise ConflictError(
                f"Management subnet {network} is already used by another VDC ({other})"
            )
