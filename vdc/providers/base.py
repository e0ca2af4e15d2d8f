"""Provisioning interface for VMs and virtual networks.

The lifecycle core only relies on the six methods below. Backends may offer
more through ``capabilities``:

- ``labels``: VMs carry structured (datacenter, role) metadata and can be
  listed by datacenter with ``list_vms_by_label``
- ``power``: ``start_vm`` / ``stop_vm`` / ``vm_state``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

CAP_LABELS = "labels"
CAP_POWER = "power"


class ProviderError(RuntimeError):
    """A backend operation failed."""

    def __init__(self, resource: str, message: str):
        self.resource = resource
        super().__init__(f"{resource}: {message}")


class ResourceMissing(ProviderError):
    """The resource to tear down does not exist. Callers treat this as success."""

    def __init__(self, resource: str):
        super().__init__(resource, "does not exist")


class VmState(str, Enum):
    """Power state of a VM."""
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    CRASHED = "crashed"
    UNKNOWN = "unknown"


@dataclass
class DiskSpec:
    """One disk of a VM.

    The root disk is an overlay on ``backing_image``; extra disks are blank
    volumes of ``size_gb``.
    """
    path: Path
    format: str = "qcow2"
    size_gb: int | None = None
    backing_image: str | None = None


@dataclass
class VmSpec:
    """Everything a backend needs to define and boot one VM."""
    datacenter: str
    role: str
    hostname: str  # Template-local device name
    cpu: int
    memory_mb: int
    interface_count: int = 0  # Data NICs the guest should configure
    disks: list[DiskSpec] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)  # Network names, mgmt first
    management_ip: str | None = None  # CIDR
    gateway: str | None = None
    ssh_public_key: str | None = None
    workspace: Path | None = None  # VDC directory for generated definitions


@dataclass
class NetworkSpec:
    """A virtual network backed by a Linux bridge."""
    datacenter: str
    bridge: str
    kind: str  # "management" (NAT) or "p2p" (isolated)
    subnet: str | None = None
    gateway: str | None = None
    workspace: Path | None = None


@dataclass
class VmHandle:
    """Reference to a VM known to the backend."""
    name: str
    uuid: str | None = None
    state: VmState = VmState.UNKNOWN


class Provider(ABC):
    """Abstract base class for provisioning backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'libvirt')."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable display name for the provider.

        Defaults to capitalized version of name.
        """
        return self.name.capitalize()

    @property
    def capabilities(self) -> list[str]:
        """Optional capabilities beyond the core contract."""
        return []

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def create_vm(self, name: str, spec: VmSpec) -> VmHandle:
        """Define and boot a VM.

        Creating a VM that already exists returns its handle.

        Raises:
            ProviderError: On any backend failure
        """
        ...

    @abstractmethod
    async def destroy_vm(self, name: str) -> None:
        """Power off and undefine a VM.

        Raises:
            ResourceMissing: If no such VM exists
            ProviderError: On any other backend failure
        """
        ...

    @abstractmethod
    async def list_vms_by_prefix(self, prefix: str) -> list[str]:
        """Names of all VMs (running or not) starting with ``prefix``."""
        ...

    @abstractmethod
    async def create_network(self, name: str, spec: NetworkSpec) -> None:
        """Define and start a network. Existing networks are left as they are.

        Raises:
            ProviderError: On any backend failure
        """
        ...

    @abstractmethod
    async def destroy_network(self, name: str) -> None:
        """Stop and undefine a network.

        Raises:
            ResourceMissing: If no such network exists
            ProviderError: On any other backend failure
        """
        ...

    @abstractmethod
    async def list_networks_by_prefix(self, prefix: str) -> list[str]:
        """Names of all networks starting with ``prefix``."""
        ...

    # --- Optional capabilities ---

    async def list_vms_by_label(self, datacenter: str) -> list[str]:
        """Names of VMs whose metadata names ``datacenter``."""
        raise NotImplementedError(f"{self.name} does not support labels")

    async def start_vm(self, name: str) -> VmState:
        raise NotImplementedError(f"{self.name} does not support power control")

    async def stop_vm(self, name: str) -> VmState:
        raise NotImplementedError(f"{self.name} does not support power control")

    async def vm_state(self, name: str) -> VmState:
        raise NotImplementedError(f"{self.name} does not support power control")
