"""Libvirt provider for VDC VMs and networks.

VMs are KVM domains booted from a qcow2 overlay on a base image plus a
NoCloud seed ISO. Networks are libvirt networks on named Linux bridges:
NAT for management, isolated for point-to-point links. Every domain carries
``<vdc:device>`` metadata naming its datacenter and role, so VMs can be
listed by label as well as by name prefix.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import ipaddress
import logging
import xml.etree.ElementTree as ET
from functools import partial
from pathlib import Path
from xml.sax.saxutils import escape as xml_escape

from vdc import cloudinit, naming
from vdc.config import settings
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

logger = logging.getLogger(__name__)

# Try to import libvirt - it's optional
try:
    import libvirt
    LIBVIRT_AVAILABLE = True
except ImportError:
    libvirt = None
    LIBVIRT_AVAILABLE = False

METADATA_NS = "https://vdc-manager.dev/xmlns/libvirt/1"
DOMAIN_XML_FILE = "domain.xml"
STOP_TIMEOUT = 30  # Seconds to wait for graceful shutdown


def generate_mac_address(vm_name: str, interface_index: int) -> str:
    """Stable locally-administered MAC for a VM NIC (QEMU OUI 52:54:00)."""
    digest = hashlib.sha256(f"{vm_name}:{interface_index}".encode()).digest()
    return "52:54:00:" + ":".join(f"{b:02x}" for b in digest[:3])


def generate_domain_xml(name: str, spec: VmSpec, seed_iso: Path | None = None) -> str:
    """Libvirt domain XML for a VDC VM."""
    disks_xml = ""
    for index, disk in enumerate(spec.disks):
        disks_xml += f'''
    <disk type='file' device='disk'>
      <driver name='qemu' type='{xml_escape(disk.format)}' cache='none' io='native' discard='unmap'/>
      <source file='{xml_escape(str(disk.path))}'/>
      <target dev='vd{chr(ord("a") + index)}' bus='virtio'/>
    </disk>'''
    if seed_iso is not None:
        disks_xml += f'''
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='{xml_escape(str(seed_iso))}'/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>'''

    interfaces_xml = ""
    for index, network in enumerate(spec.networks):
        interfaces_xml += f'''
    <interface type='network'>
      <mac address='{generate_mac_address(name, index)}'/>
      <source network='{xml_escape(network)}'/>
      <model type='virtio'/>
    </interface>'''

    return f'''<domain type='kvm'>
  <name>{xml_escape(name)}</name>
  <metadata>
    <vdc:device xmlns:vdc="{METADATA_NS}">
      <vdc:datacenter>{xml_escape(spec.datacenter)}</vdc:datacenter>
      <vdc:role>{xml_escape(spec.role)}</vdc:role>
      <vdc:hostname>{xml_escape(spec.hostname)}</vdc:hostname>
    </vdc:device>
  </metadata>
  <memory unit='MiB'>{spec.memory_mb}</memory>
  <vcpu>{spec.cpu}</vcpu>
  <os>
    <type arch='x86_64' machine='q35'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <cpu mode='host-passthrough'/>
  <clock offset='utc'/>
  <devices>{disks_xml}{interfaces_xml}
    <serial type='pty'>
      <target port='0'/>
    </serial>
    <console type='pty'>
      <target type='serial' port='0'/>
    </console>
    <graphics type='vnc' port='-1' autoport='yes' listen='127.0.0.1'/>
  </devices>
</domain>'''


def generate_network_xml(name: str, spec: NetworkSpec) -> str:
    """Libvirt network XML: NAT for management, isolated otherwise."""
    if spec.kind == "management":
        ip_xml = ""
        if spec.gateway and spec.subnet:
            netmask = ipaddress.IPv4Network(spec.subnet).netmask
            ip_xml = f"\n  <ip address='{spec.gateway}' netmask='{netmask}'/>"
        return f'''<network>
  <name>{xml_escape(name)}</name>
  <forward mode='nat'/>
  <bridge name='{xml_escape(spec.bridge)}' stp='on' delay='0'/>{ip_xml}
</network>'''

    return f'''<network>
  <name>{xml_escape(name)}</name>
  <bridge name='{xml_escape(spec.bridge)}' stp='off' delay='0'/>
</network>'''


def metadata_labels(domain_xml: str) -> dict[str, str]:
    """Extract ``<vdc:device>`` labels from a domain XML description."""
    try:
        root = ET.fromstring(domain_xml)
    except ET.ParseError:
        return {}
    device = root.find(f"metadata/{{{METADATA_NS}}}device")
    if device is None:
        return {}
    return {
        child.tag.split("}", 1)[1]: (child.text or "").strip()
        for child in device
    }


class LibvirtProvider(Provider):
    """Provider for libvirt/QEMU VMs and bridge networks.

    Libvirt's Python bindings are blocking and not thread-safe, so every
    ``conn`` call runs on one dedicated worker thread.
    """

    def __init__(self, uri: str | None = None):
        if not LIBVIRT_AVAILABLE:
            raise ImportError("libvirt-python package is not installed")
        self._conn: libvirt.virConnect | None = None
        self._uri = uri or settings.libvirt_uri
        self._libvirt_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="libvirt",
        )

    async def _run_libvirt(self, func, *args):
        """Run a blocking function on the dedicated libvirt thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._libvirt_executor, partial(func, *args))

    @property
    def name(self) -> str:
        return "libvirt"

    @property
    def display_name(self) -> str:
        return "Libvirt/QEMU"

    @property
    def capabilities(self) -> list[str]:
        return [CAP_LABELS, CAP_POWER]

    @property
    def conn(self) -> libvirt.virConnect:
        """Lazy-initialize libvirt connection."""
        if self._conn is None or not self._conn.isAlive():
            try:
                self._conn = libvirt.open(self._uri)
            except libvirt.libvirtError as e:
                raise ProviderError(self._uri, f"cannot connect to libvirt: {e}") from e
        return self._conn

    # --- Disks ---

    def _resolve_base_image(self, image: str | None) -> str:
        """Find a base image in the image store.

        Raises:
            ProviderError: If the image cannot be found
        """
        ref = image or settings.base_image
        if ref.startswith("/"):
            if Path(ref).exists():
                return ref
            raise ProviderError(ref, "base image not found")

        store = settings.image_store
        candidates = [store / ref]
        if not ref.endswith((".qcow2", ".qcow", ".img")):
            candidates.append(store / f"{ref}.qcow2")
        for candidate in candidates:
            if candidate.exists():
                return str(candidate)
        raise ProviderError(ref, f"base image not found in {store}")

    async def _qemu_img(self, resource: str, *args: str) -> None:
        process = await asyncio.create_subprocess_exec(
            "qemu-img", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            raise ProviderError(resource, f"qemu-img {args[0]} failed: {stderr.decode().strip()}")

    async def _prepare_disk(self, disk: DiskSpec) -> None:
        if disk.path.exists():
            logger.info(f"Disk already exists: {disk.path}")
            return
        disk.path.parent.mkdir(parents=True, exist_ok=True)
        if disk.backing_image is not None:
            backing = self._resolve_base_image(disk.backing_image)
            await self._qemu_img(
                str(disk.path), "create", "-F", "qcow2", "-f", disk.format,
                "-b", backing, str(disk.path),
            )
            if disk.size_gb:
                await self._qemu_img(str(disk.path), "resize", str(disk.path), f"{disk.size_gb}G")
            logger.info(f"Created overlay disk: {disk.path}")
        else:
            await self._qemu_img(
                str(disk.path), "create", "-f", disk.format, str(disk.path), f"{disk.size_gb or 1}G",
            )
            logger.info(f"Created data volume: {disk.path} ({disk.size_gb}GB)")

    async def _prepare_seed(self, name: str, spec: VmSpec) -> Path | None:
        if spec.workspace is None:
            return None
        seed_dir = spec.workspace / naming.CATEGORY_CLOUD_INIT / name
        cloudinit.write_seed(
            seed_dir, name, spec.hostname,
            management_ip=spec.management_ip,
            gateway=spec.gateway,
            data_interfaces=spec.interface_count,
            ssh_public_key=spec.ssh_public_key,
        )
        iso = seed_dir.parent / f"{name}-cidata.iso"
        try:
            return await cloudinit.build_iso(seed_dir, iso)
        except RuntimeError as e:
            raise ProviderError(name, str(e)) from e

    # --- Domains ---

    def _lookup_domain(self, name: str):
        try:
            return self.conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ProviderError(name, str(e)) from e

    def _domain_state(self, domain) -> VmState:
        """Map libvirt domain state to VmState."""
        state, _ = domain.state()
        state_map = {
            libvirt.VIR_DOMAIN_RUNNING: VmState.RUNNING,
            libvirt.VIR_DOMAIN_BLOCKED: VmState.RUNNING,
            libvirt.VIR_DOMAIN_PAUSED: VmState.PAUSED,
            libvirt.VIR_DOMAIN_SHUTDOWN: VmState.RUNNING,
            libvirt.VIR_DOMAIN_SHUTOFF: VmState.STOPPED,
            libvirt.VIR_DOMAIN_CRASHED: VmState.CRASHED,
            libvirt.VIR_DOMAIN_PMSUSPENDED: VmState.PAUSED,
        }
        return state_map.get(state, VmState.UNKNOWN)

    def _define_and_start_sync(self, name: str, xml: str) -> VmHandle:
        try:
            domain = self.conn.defineXML(xml)
            domain.create()
        except libvirt.libvirtError as e:
            raise ProviderError(name, f"failed to define/start domain: {e}") from e
        return VmHandle(name=name, uuid=domain.UUIDString(), state=VmState.RUNNING)

    def _ensure_running_sync(self, domain) -> VmHandle:
        if self._domain_state(domain) != VmState.RUNNING:
            try:
                domain.create()
            except libvirt.libvirtError as e:
                raise ProviderError(domain.name(), f"failed to start domain: {e}") from e
        return VmHandle(name=domain.name(), uuid=domain.UUIDString(), state=VmState.RUNNING)

    async def create_vm(self, name: str, spec: VmSpec) -> VmHandle:
        existing = await self._run_libvirt(self._lookup_domain, name)
        if existing is not None:
            logger.info(f"Domain {name} already defined, ensuring it is running")
            return await self._run_libvirt(self._ensure_running_sync, existing)

        for disk in spec.disks:
            await self._prepare_disk(disk)
        seed_iso = await self._prepare_seed(name, spec)

        xml = generate_domain_xml(name, spec, seed_iso)
        if spec.workspace is not None:
            definition = spec.workspace / naming.CATEGORY_CLOUD_INIT / name / DOMAIN_XML_FILE
            definition.parent.mkdir(parents=True, exist_ok=True)
            definition.write_text(xml, encoding="utf-8")

        handle = await self._run_libvirt(self._define_and_start_sync, name, xml)
        logger.info(f"Started domain {name}", extra={"vdc": spec.datacenter})
        return handle

    def _destroy_vm_sync(self, name: str) -> None:
        domain = self._lookup_domain(name)
        if domain is None:
            raise ResourceMissing(name)
        try:
            if domain.isActive():
                domain.destroy()
            flags = getattr(libvirt, "VIR_DOMAIN_UNDEFINE_NVRAM", 0)
            domain.undefineFlags(flags)
        except libvirt.libvirtError as e:
            raise ProviderError(name, f"failed to destroy domain: {e}") from e

    async def destroy_vm(self, name: str) -> None:
        await self._run_libvirt(self._destroy_vm_sync, name)
        logger.info(f"Destroyed domain {name}")

    def _list_domains_sync(self) -> list:
        try:
            return self.conn.listAllDomains(0)
        except libvirt.libvirtError as e:
            raise ProviderError("domains", f"listing failed: {e}") from e

    def _list_prefixed_sync(self, prefix: str) -> list[str]:
        names = [d.name() for d in self._list_domains_sync()]
        return sorted(n for n in names if n.startswith(prefix))

    async def list_vms_by_prefix(self, prefix: str) -> list[str]:
        return await self._run_libvirt(self._list_prefixed_sync, prefix)

    def _list_labelled_sync(self, datacenter: str) -> list[str]:
        names = []
        for domain in self._list_domains_sync():
            try:
                labels = metadata_labels(domain.XMLDesc(0))
            except libvirt.libvirtError as e:
                logger.debug(f"Skipping domain {domain.name()}: {e}")
                continue
            if labels.get("datacenter") == datacenter:
                names.append(domain.name())
        return sorted(names)

    async def list_vms_by_label(self, datacenter: str) -> list[str]:
        return await self._run_libvirt(self._list_labelled_sync, datacenter)

    # --- Power ---

    async def start_vm(self, name: str) -> VmState:
        domain = await self._run_libvirt(self._lookup_domain, name)
        if domain is None:
            raise ResourceMissing(name)
        handle = await self._run_libvirt(self._ensure_running_sync, domain)
        return handle.state

    async def stop_vm(self, name: str) -> VmState:
        domain = await self._run_libvirt(self._lookup_domain, name)
        if domain is None:
            raise ResourceMissing(name)
        if await self._run_libvirt(self._domain_state, domain) != VmState.RUNNING:
            return VmState.STOPPED

        try:
            # Graceful shutdown first, then force
            await self._run_libvirt(domain.shutdown)
            for _ in range(STOP_TIMEOUT):
                await asyncio.sleep(1)
                if await self._run_libvirt(self._domain_state, domain) != VmState.RUNNING:
                    break
            else:
                logger.warning(f"Domain {name} ignored shutdown, forcing off")
                await self._run_libvirt(domain.destroy)
        except libvirt.libvirtError as e:
            raise ProviderError(name, f"failed to stop domain: {e}") from e
        return VmState.STOPPED

    async def vm_state(self, name: str) -> VmState:
        domain = await self._run_libvirt(self._lookup_domain, name)
        if domain is None:
            raise ResourceMissing(name)
        return await self._run_libvirt(self._domain_state, domain)

    # --- Networks ---

    def _lookup_network(self, name: str):
        try:
            return self.conn.networkLookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_NETWORK:
                return None
            raise ProviderError(name, str(e)) from e

    def _create_network_sync(self, name: str, xml: str) -> None:
        try:
            network = self._lookup_network(name)
            if network is None:
                network = self.conn.networkDefineXML(xml)
            network.setAutostart(1)
            if not network.isActive():
                network.create()
        except libvirt.libvirtError as e:
            raise ProviderError(name, f"failed to create network: {e}") from e

    async def create_network(self, name: str, spec: NetworkSpec) -> None:
        xml = generate_network_xml(name, spec)
        if spec.workspace is not None:
            definition = spec.workspace / naming.CATEGORY_NETWORK_XMLS / f"{name}.xml"
            definition.parent.mkdir(parents=True, exist_ok=True)
            definition.write_text(xml, encoding="utf-8")
        await self._run_libvirt(self._create_network_sync, name, xml)
        logger.info(f"Created network {name} on bridge {spec.bridge}", extra={"vdc": spec.datacenter})

    def _destroy_network_sync(self, name: str) -> None:
        network = self._lookup_network(name)
        if network is None:
            raise ResourceMissing(name)
        try:
            if network.isActive():
                network.destroy()
            network.undefine()
        except libvirt.libvirtError as e:
            raise ProviderError(name, f"failed to destroy network: {e}") from e

    async def destroy_network(self, name: str) -> None:
        await self._run_libvirt(self._destroy_network_sync, name)
        logger.info(f"Destroyed network {name}")

    def _list_networks_sync(self) -> list[str]:
        try:
            return [n.name() for n in self.conn.listAllNetworks(0)]
        except libvirt.libvirtError as e:
            raise ProviderError("networks", f"listing failed: {e}") from e

    async def list_networks_by_prefix(self, prefix: str) -> list[str]:
        names = await self._run_libvirt(self._list_networks_sync)
        return sorted(n for n in names if n.startswith(prefix))
