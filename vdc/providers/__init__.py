"""Provisioning backends for VDC VMs and networks."""

from vdc.providers.base import (
    CAP_LABELS,
    CAP_POWER,
    DiskSpec,
    NetworkSpec,
    Provider,
    ProviderError,
    ResourceMissing,
    VmHandle,
    VmSpec,
    VmState,
)
from vdc.providers.registry import (
    ProviderRegistry,
    get_provider,
    list_providers,
    register_provider,
)

__all__ = [
    # Base classes and types
    "Provider",
    "ProviderError",
    "ResourceMissing",
    "DiskSpec",
    "NetworkSpec",
    "VmHandle",
    "VmSpec",
    "VmState",
    "CAP_LABELS",
    "CAP_POWER",
    # Registry
    "ProviderRegistry",
    "get_provider",
    "list_providers",
    "register_provider",
]
