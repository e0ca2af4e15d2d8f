"""Data schemas for the registry, topology templates and bound topologies.

Registry records and bound topologies are persisted to disk, so every model
here round-trips through ``model_dump(mode="json")`` / ``model_validate``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class VdcStatus(str, Enum):
    """Registry status of a virtual datacenter."""
    CREATED = "created"  # Record exists, provisioning in progress
    PARTIALLY_PROVISIONED = "partially_provisioned"  # Provisioning aborted midway
    RUNNING = "running"
    STOPPED = "stopped"
    DESTROYING = "destroying"


class DeviceRole(str, Enum):
    """Role of a device in the fabric, in IP assignment order."""
    HYPERVISOR = "hypervisor"
    LEAF = "leaf"
    SPINE = "spine"
    SUPERSPINE = "superspine"


class NetworkKind(str, Enum):
    """Kind of bound virtual network."""
    MANAGEMENT = "management"
    P2P = "p2p"


class OrphanKind(str, Enum):
    """Kind of orphaned resource."""
    VM = "vm"
    NETWORK = "network"
    DISK = "disk"


# --- Registry ---

def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class VdcRecord(BaseModel):
    """One virtual datacenter in the registry."""
    name: str
    namespace: str  # Always "vdc-" + name
    created_at: str = Field(default_factory=_utcnow)
    status: VdcStatus = VdcStatus.CREATED
    management_subnet: str
    config_file: str  # Path to the bound topology
    source_config: str | None = None  # Template the VDC was created from
    vms: list[str] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)
    switches: list[str] = Field(default_factory=list)

    @property
    def namespace_id(self) -> str:
        return self.namespace

    def tracked_resources(self) -> list[str]:
        return [*self.vms, *self.switches, *self.networks]


class RegistryDocument(BaseModel):
    """The whole registry file."""
    version: str = "1.0"
    virtual_datacenters: list[VdcRecord] = Field(default_factory=list)

    def find(self, name: str) -> VdcRecord | None:
        for record in self.virtual_datacenters:
            if record.name == name:
                return record
        return None

    def used_subnets(self) -> list[str]:
        return [record.management_subnet for record in self.virtual_datacenters]


# --- Topology template ---

class _TemplateModel(BaseModel):
    # Unknown keys (BGP settings, descriptions, ...) are carried into the bound copy
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ManagementConfig(_TemplateModel):
    ip: str | None = None


class DeviceResources(_TemplateModel):
    cpu: int = 2
    memory: int = 4096  # MiB
    disk: int = 50  # GiB


class DataInterface(_TemplateModel):
    name: str


class AdditionalDisk(_TemplateModel):
    name: str
    size: int  # GiB
    format: str = "qcow2"


class HypervisorTemplate(_TemplateModel):
    name: str
    short_name: str | None = None
    router_id: str | None = None
    asn: int | None = None
    image: str | None = None
    management: ManagementConfig = Field(default_factory=ManagementConfig)
    resources: DeviceResources = Field(default_factory=DeviceResources)
    data_interfaces: list[DataInterface] = Field(default_factory=list)
    additional_disks: list[AdditionalDisk] = Field(default_factory=list)


class SwitchTemplate(_TemplateModel):
    name: str
    router_id: str | None = None
    asn: int | None = None
    image: str | None = None
    ports: int | None = None
    port_speed: str | None = None
    management: ManagementConfig = Field(default_factory=ManagementConfig)
    resources: DeviceResources = Field(default_factory=DeviceResources)


class SwitchTiers(_TemplateModel):
    leaf: list[SwitchTemplate] = Field(default_factory=list)
    spine: list[SwitchTemplate] = Field(default_factory=list)
    superspine: list[SwitchTemplate] = Field(default_factory=list)


class CableEndpoint(_TemplateModel):
    device: str
    interface: str


class Cable(_TemplateModel):
    source: CableEndpoint
    destination: CableEndpoint
    description: str | None = None


class GlobalConfig(_TemplateModel):
    datacenter_name: str | None = None


class TopologyTemplate(_TemplateModel):
    """Declarative topology as written by the operator."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    hypervisors: list[HypervisorTemplate] = Field(default_factory=list)
    switches: SwitchTiers = Field(default_factory=SwitchTiers)
    cabling: list[Cable] = Field(default_factory=list)


# --- Bound topology ---

class BoundDisk(BaseModel):
    """A disk image file of a bound device, relative to ``disks/``."""
    file: str
    size_gb: int | None = None
    format: str = "qcow2"
    root: bool = False  # Overlay on the device image


class BoundDevice(BaseModel):
    """A template device with its VDC-specific identity filled in."""
    local_name: str
    role: DeviceRole
    vm_name: str
    management_ip: str  # CIDR form, e.g. 192.168.10.11/24
    interface_count: int = 0  # Cabled data NICs, one per attached link
    image: str | None = None
    resources: DeviceResources = Field(default_factory=DeviceResources)
    disks: list[BoundDisk] = Field(default_factory=list)  # Root disk first
    networks: list[str] = Field(default_factory=list)  # Attachments, mgmt first

    @property
    def is_switch(self) -> bool:
        return self.role != DeviceRole.HYPERVISOR

    @property
    def address(self) -> str:
        return self.management_ip.split("/")[0]


class BoundNetwork(BaseModel):
    """A virtual network derived from the template."""
    local_name: str
    name: str
    bridge: str
    kind: NetworkKind
    endpoints: list[str] = Field(default_factory=list)  # "device:interface"


class BoundTopology(BaseModel):
    """Per-VDC copy of the template with every name and address assigned."""
    datacenter_name: str
    management_subnet: str
    gateway: str
    devices: list[BoundDevice] = Field(default_factory=list)
    networks: list[BoundNetwork] = Field(default_factory=list)
    template: dict[str, Any] = Field(default_factory=dict)  # Rewritten template

    def device(self, local_name: str) -> BoundDevice | None:
        for device in self.devices:
            if device.local_name == local_name:
                return device
        return None

    def devices_by_role(self, role: DeviceRole) -> list[BoundDevice]:
        return [d for d in self.devices if d.role == role]

    def expected_vms(self) -> set[str]:
        return {device.vm_name for device in self.devices}

    def expected_networks(self) -> set[str]:
        return {network.name for network in self.networks}

    def expected_disks(self) -> set[str]:
        return {disk.file for device in self.devices for disk in device.disks}


# --- Reconciliation ---

class Orphan(BaseModel):
    """A resource named as belonging to a VDC but absent from its expected set."""
    kind: OrphanKind
    identifier: str
