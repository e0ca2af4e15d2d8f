"""Topology templates and their VDC-specific bound copies.

A template describes hypervisors, leaf/spine/superspine switches and the
cabling between them. Binding it to a VDC fills in, for every device, the
backend VM name and a management address, and derives the networks the VDC
needs:

- ``{dc}-mgmt``: NAT management network on ``.1`` of the VDC's /24
- ``{dc}-p2p-link-{i}``: one isolated network per cable, ``i`` = cable index

Management addresses follow a fixed, gap-free order: ``.1`` gateway,
``.2``-``.10`` reserved for infrastructure, then hypervisors, leaves, spines
and superspines in declaration order starting at ``.11``.

Binding is deterministic: the same template and subnet always produce the
same bytes on disk. The orphan reconciler relies on this to recompute the
expected resource set.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from vdc import naming
from vdc.errors import InvalidName, SubnetExhausted, ValidationError
from vdc.schemas import (
    BoundDevice,
    BoundDisk,
    BoundNetwork,
    BoundTopology,
    DeviceRole,
    HypervisorTemplate,
    NetworkKind,
    SwitchTemplate,
    TopologyTemplate,
)

logger = logging.getLogger(__name__)

GATEWAY_HOST = 1
FIRST_DEVICE_HOST = 11
LAST_HOST = 254
RESERVED_HOSTS = FIRST_DEVICE_HOST - 1
ASN_MAX = 4294967295

MGMT_BRIDGE_TYPE = "m"
P2P_BRIDGE_TYPE = "l"

# Tier order is also the IP assignment order
SWITCH_TIERS = (DeviceRole.LEAF, DeviceRole.SPINE, DeviceRole.SUPERSPINE)


class _StableDumper(yaml.SafeDumper):
    """YAML dumper that never emits anchors/aliases.

    Shared sub-objects would otherwise be written as ``&id001`` references,
    which makes the output depend on object identity rather than content.
    """

    def ignore_aliases(self, data: Any) -> bool:
        return True


def _str_representer(dumper: yaml.Dumper, data: str) -> yaml.ScalarNode:
    """Represent multi-line strings with block scalar style."""
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_StableDumper.add_representer(str, _str_representer)


# --- Loading and validation ---

def parse_template(text: str, source: str = "<string>") -> TopologyTemplate:
    """Parse template YAML.

    Raises:
        ValidationError: If the YAML is malformed or does not fit the schema
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML syntax in {source}: {e}") from None

    if not isinstance(data, dict):
        raise ValidationError(f"Topology {source} must be a YAML mapping")

    # "switches:" with no tiers parses as None
    if data.get("switches") is None:
        data.pop("switches", None)

    try:
        template = TopologyTemplate.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid topology {source}: {e}") from None

    validate_template(template)
    return template


def load_template(path: str | Path) -> TopologyTemplate:
    """Read and validate a template file.

    Raises:
        ValidationError: If the file is missing or invalid
    """
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Config file not found: {path}")
    return parse_template(path.read_text(encoding="utf-8"), source=str(path))


def _tier(template: TopologyTemplate, role: DeviceRole) -> list[SwitchTemplate]:
    return getattr(template.switches, role.value)


def iter_devices(
    template: TopologyTemplate,
) -> list[tuple[DeviceRole, HypervisorTemplate | SwitchTemplate]]:
    """Devices in IP assignment order."""
    devices: list[tuple[DeviceRole, HypervisorTemplate | SwitchTemplate]] = [
        (DeviceRole.HYPERVISOR, hv) for hv in template.hypervisors
    ]
    for role in SWITCH_TIERS:
        devices.extend((role, sw) for sw in _tier(template, role))
    return devices


def validate_template(template: TopologyTemplate) -> None:
    """Check structural rules that the schema alone cannot express.

    Raises:
        ValidationError: On the first rule violation
    """
    devices = iter_devices(template)
    if not devices:
        raise ValidationError("No hypervisors or switches defined in configuration")

    seen: dict[str, DeviceRole] = {}
    router_ids: dict[str, str] = {}
    for role, device in devices:
        naming.validate_local_name(device.name)
        if device.name in seen:
            raise ValidationError(
                f"Duplicate device name '{device.name}' ({seen[device.name].value} and {role.value})"
            )
        seen[device.name] = role

        if device.router_id:
            if device.router_id in router_ids:
                raise ValidationError(
                    f"Duplicate router ID {device.router_id} found: "
                    f"{router_ids[device.router_id]} and {device.name}"
                )
            router_ids[device.router_id] = device.name

        if device.asn is not None and not 1 <= device.asn <= ASN_MAX:
            raise ValidationError(
                f"Invalid ASN {device.asn} for {device.name} (must be 1-{ASN_MAX})"
            )

    used_ports: dict[str, int] = {}
    for index, cable in enumerate(template.cabling):
        for end in (cable.source, cable.destination):
            if end.device not in seen:
                raise ValidationError(
                    f"Cable connection {index} references unknown device '{end.device}'"
                )
            port = f"{end.device}:{end.interface}"
            if port in used_ports:
                raise ValidationError(
                    f"Interface {port} is cabled twice (connections {used_ports[port]} and {index})"
                )
            used_ports[port] = index
        if cable.source.device == cable.destination.device:
            raise ValidationError(f"Cable connection {index} loops back to {cable.source.device}")


# --- Binding ---

def _host(network: ipaddress.IPv4Network, host: int) -> ipaddress.IPv4Address:
    return network.network_address + host


def bind_topology(template: TopologyTemplate, dc: str, subnet: str) -> BoundTopology:
    """Bind a template to datacenter ``dc`` on management subnet ``subnet``.

    Raises:
        InvalidName: If a derived name breaks backend naming rules
        SubnetExhausted: If the devices do not fit in the /24
        ValidationError: If the subnet is not a /24
    """
    naming.validate_dc_name(dc)
    try:
        network = ipaddress.IPv4Network(subnet, strict=True)
    except ValueError as e:
        raise ValidationError(f"Invalid management subnet '{subnet}': {e}") from None
    if network.prefixlen != 24:
        raise ValidationError(f"Management subnet must be a /24, got {subnet}")

    devices = iter_devices(template)
    if len(devices) + RESERVED_HOSTS > LAST_HOST:
        raise SubnetExhausted(str(network), len(devices))

    gateway = _host(network, GATEWAY_HOST)

    mgmt = BoundNetwork(
        local_name=naming.MGMT_LOCAL_NAME,
        name=naming.network_name(dc, naming.MGMT_LOCAL_NAME),
        bridge=naming.bridge_name(dc, MGMT_BRIDGE_TYPE, 0),
        kind=NetworkKind.MANAGEMENT,
    )
    networks = [mgmt]
    attachments: dict[str, list[str]] = {}
    for index, cable in enumerate(template.cabling):
        local = naming.p2p_local_name(index)
        link = BoundNetwork(
            local_name=local,
            name=naming.network_name(dc, local),
            bridge=naming.bridge_name(dc, P2P_BRIDGE_TYPE, index),
            kind=NetworkKind.P2P,
            endpoints=[
                f"{cable.source.device}:{cable.source.interface}",
                f"{cable.destination.device}:{cable.destination.interface}",
            ],
        )
        networks.append(link)
        for end in (cable.source, cable.destination):
            attachments.setdefault(end.device, []).append(link.name)

    bound_devices: list[BoundDevice] = []
    for offset, (role, device) in enumerate(devices):
        vm = naming.vm_name(dc, device.name)
        ip = f"{_host(network, FIRST_DEVICE_HOST + offset)}/{network.prefixlen}"
        disks = [BoundDisk(file=naming.disk_file(vm), size_gb=device.resources.disk, root=True)]
        if role == DeviceRole.HYPERVISOR:
            disks += [
                BoundDisk(file=naming.disk_file(vm, d.name, d.format), size_gb=d.size, format=d.format)
                for d in device.additional_disks
            ]
        links = attachments.get(device.name, [])
        bound_devices.append(BoundDevice(
            local_name=device.name,
            role=role,
            vm_name=vm,
            management_ip=ip,
            interface_count=len(links),
            image=device.image,
            resources=device.resources,
            disks=disks,
            networks=[mgmt.name, *links],
        ))
        mgmt.endpoints.append(vm)

    _check_disk_files(bound_devices)

    bound = BoundTopology(
        datacenter_name=dc,
        management_subnet=str(network),
        gateway=str(gateway),
        devices=bound_devices,
        networks=networks,
    )
    bound.template = _rewrite_template(template, bound)
    return bound


def _check_disk_files(devices: list[BoundDevice]) -> None:
    """Reject templates where two disks bind to the same image file.

    ``hv1`` with extra disk ``data0`` and a device named ``hv1-data0`` both
    derive ``{dc}-hv1-data0.qcow2``.
    """
    owners: dict[str, str] = {}
    for device in devices:
        for disk in device.disks:
            if disk.file in owners:
                raise InvalidName(
                    disk.file,
                    f"disk image of {device.local_name} collides with one of {owners[disk.file]}; "
                    "rename the device or the additional disk",
                )
            owners[disk.file] = device.local_name


def _rewrite_template(template: TopologyTemplate, bound: BoundTopology) -> dict[str, Any]:
    """The operator's template with datacenter name and management IPs filled in."""
    doc = template.model_dump(mode="json", by_alias=True, exclude_none=True)
    glob = doc.setdefault("global", {})
    glob["datacenter_name"] = bound.datacenter_name
    glob["management_subnet"] = bound.management_subnet
    glob["management_gateway"] = bound.gateway

    entries = list(doc.get("hypervisors", []))
    for role in SWITCH_TIERS:
        entries.extend(doc.get("switches", {}).get(role.value, []))
    for entry, device in zip(entries, bound.devices):
        entry.setdefault("management", {})["ip"] = device.management_ip
        entry["vm_name"] = device.vm_name
    return doc


def summarize_allocation(bound: BoundTopology) -> list[str]:
    """Human-readable address ranges per tier."""
    base = bound.gateway.rsplit(".", 1)[0]
    lines = [f"Gateway: {bound.gateway}", f"Reserved for infrastructure: {base}.2-10"]
    for role in (DeviceRole.HYPERVISOR, *SWITCH_TIERS):
        tier = bound.devices_by_role(role)
        if tier:
            first = tier[0].address.rsplit(".", 1)[1]
            last = tier[-1].address.rsplit(".", 1)[1]
            lines.append(f"{role.value} ({len(tier)}): {base}.{first}-{last}")
    return lines


# --- Serialization ---

def dump_bound(bound: BoundTopology) -> str:
    """Serialize a bound topology to YAML.

    The rewritten template stays at the top level (so the file reads like the
    operator's input); the derived devices and networks go under ``vdc``.
    """
    payload = bound.model_dump(mode="json")
    doc = dict(payload.pop("template"))
    doc["vdc"] = payload
    return yaml.dump(
        doc,
        Dumper=_StableDumper,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def load_bound(text: str) -> BoundTopology:
    doc = yaml.safe_load(text) or {}
    if not isinstance(doc, dict) or "vdc" not in doc:
        raise ValidationError("Bound topology is missing its 'vdc' section")
    payload = dict(doc.pop("vdc"))
    payload["template"] = doc
    try:
        return BoundTopology.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid bound topology: {e}") from None


def write_bound(bound: BoundTopology, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_bound(bound), encoding="utf-8")
    logger.info(f"Wrote bound topology: {path}", extra={"vdc": bound.datacenter_name})
    return path


def read_bound(path: Path) -> BoundTopology | None:
    """Read a bound topology, returning None if the file does not exist."""
    if not path.is_file():
        return None
    return load_bound(path.read_text(encoding="utf-8"))


# --- Display ---

def cabling_rows(bound: BoundTopology) -> list[tuple[str, str, str, str, str]]:
    """(network, src device, src iface, dst device, dst iface) per cable."""
    rows = []
    for network in bound.networks:
        if network.kind != NetworkKind.P2P or len(network.endpoints) != 2:
            continue
        src_dev, src_if = network.endpoints[0].split(":", 1)
        dst_dev, dst_if = network.endpoints[1].split(":", 1)
        rows.append((network.name, src_dev, src_if, dst_dev, dst_if))
    return rows


def render_diagram(bound: BoundTopology) -> str:
    """Tiered text diagram, top tier first, with each device's neighbours."""
    neighbours: dict[str, list[str]] = {}
    for _, src, _, dst, _ in cabling_rows(bound):
        neighbours.setdefault(src, []).append(dst)
        neighbours.setdefault(dst, []).append(src)

    lines: list[str] = []
    for role in (DeviceRole.SUPERSPINE, DeviceRole.SPINE, DeviceRole.LEAF, DeviceRole.HYPERVISOR):
        tier = bound.devices_by_role(role)
        if not tier:
            continue
        boxes = "  ".join(f"[ {d.local_name} ]" for d in tier)
        lines.append(f"{role.value.upper():<12}{boxes}")
        lines.append(f"{'':<12}" + "  ".join(f"  {d.address}  " for d in tier))
        lines.append("")

    links = [
        f"  {device.local_name} -> {', '.join(neighbours[device.local_name])}"
        for device in bound.devices
        if device.local_name in neighbours
    ]
    if links:
        lines.append("Connections:")
        lines.extend(links)
    else:
        lines.append("No cabling defined")
    return "\n".join(lines)
