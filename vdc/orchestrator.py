"""VDC lifecycle orchestration.

State machine of one VDC::

    absent --create--> created --(all provisioned)--> running <--start/stop--> stopped
                          \\--(provisioning failed)--> partially_provisioned
    running | stopped | partially_provisioned --destroy--> destroying --> absent

``create`` never rolls back: whatever was provisioned before a failure stays
tracked in the registry record so ``destroy`` (or ``cleanup-orphans``) can
remove it. ``destroy`` is best-effort and idempotent; the registry record is
its last casualty, and survives (in ``destroying``) if any step failed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from vdc import credentials, naming, storage, subnets, topology
from vdc.config import settings
from vdc.errors import (
    AlreadyExists,
    ConflictError,
    ItemFailure,
    NamespaceBusy,
    OperationReport,
    PartialFailure,
    ProvisioningError,
    ValidationError,
    VdcError,
)
from vdc.namespace import NamespaceCommandError, NamespaceManager, get_namespace_manager
from vdc.providers.base import (
    CAP_POWER,
    DiskSpec,
    NetworkSpec,
    Provider,
    ProviderError,
    ResourceMissing,
    VmSpec,
    VmState,
)
from vdc.providers.registry import get_provider
from vdc.reconciler import ConfirmCallback, OrphanReconciler, ReconcileReport
from vdc.registry import RegistryStore
from vdc.schemas import BoundDevice, BoundTopology, VdcRecord, VdcStatus

logger = logging.getLogger(__name__)

# Registry statuses reported as-is by ``list``; only steady states are probed
TRANSITIONAL_STATUSES = (
    VdcStatus.CREATED,
    VdcStatus.PARTIALLY_PROVISIONED,
    VdcStatus.DESTROYING,
)


@dataclass
class VdcListing:
    """One row of ``list``."""
    record: VdcRecord
    observed_status: str


@dataclass
class VdcStatusInfo:
    """Everything ``status`` reports about one VDC."""
    record: VdcRecord
    namespace_exists: bool
    vms: dict[str, str] = field(default_factory=dict)  # vm name -> state
    networks: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)  # Expected but absent
    bound: BoundTopology | None = None


@dataclass
class DiskUsage:
    file: str
    size_bytes: int | None  # None if the file does not exist


@dataclass
class ResourceSummary:
    """Bound devices with their disks, for ``resources``."""
    bound: BoundTopology
    disks: dict[str, list[DiskUsage]] = field(default_factory=dict)  # vm -> disks
    total_bytes: int = 0


def _ordered_union(*groups) -> list[str]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            seen.setdefault(item, None)
    return list(seen)


class VdcOrchestrator:
    """Drives every VDC command against the registry, namespaces and provider.

    Usage:
        orchestrator = VdcOrchestrator()
        report = await orchestrator.create("prod", "topology.yaml")
        report = await orchestrator.destroy("prod")
    """

    def __init__(
        self,
        registry: RegistryStore | None = None,
        namespaces: NamespaceManager | None = None,
        provider: Provider | None = None,
    ):
        self.registry = registry or RegistryStore()
        self.namespaces = namespaces or get_namespace_manager()
        self._provider = provider

    @property
    def provider(self) -> Provider:
        """Lazily resolve the configured provider."""
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    def _load_bound(self, record: VdcRecord) -> BoundTopology | None:
        try:
            return topology.read_bound(Path(record.config_file))
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable topology for {record.name}: {e.message}")
            return None

    # --- create ---

    async def create(self, name: str, config_file: str | Path,
                     subnet: str | None = None) -> OperationReport:
        """Create and provision a VDC from a topology template.

        Raises:
            ValidationError: Bad name, missing/invalid config or subnet
            AlreadyExists: A VDC with this name is registered
            ConflictError: The explicit subnet overlaps another VDC
            AllocationExhausted: No management subnet left
            ProvisioningError: A resource failed to provision; the VDC is left
                ``partially_provisioned``
        """
        naming.validate_dc_name(name)
        if self.registry.exists(name):
            raise AlreadyExists(name)
        template = topology.load_template(config_file)
        if subnet is not None:
            subnet = subnets.validate_subnet(subnet)

        # Bind once up front so naming and capacity errors abort before any mutation
        probe = subnet or subnets.next_free_subnet(self.registry.used_subnets())
        bound = topology.bind_topology(template, name, probe)

        report = OperationReport(operation="create", vdc_name=name)
        namespace = naming.namespace_id(name)

        with self.registry.transaction() as doc:
            if doc.find(name) is not None:
                raise AlreadyExists(name)
            if subnet is not None:
                subnets.check_disjoint(subnet, doc.used_subnets())
                chosen = subnet
            else:
                chosen = subnets.next_free_subnet(doc.used_subnets())

            try:
                await self.namespaces.create(namespace, owner=name)
            except (NamespaceCommandError, OSError) as e:
                # Nothing was persisted: the transaction discards the document
                raise self._step_error(report, "create namespace", namespace, e) from e

            doc.virtual_datacenters.append(VdcRecord(
                name=name,
                namespace=namespace,
                management_subnet=chosen,
                config_file=str(storage.topology_path(name)),
                source_config=str(Path(config_file).resolve()),
            ))

        logger.info(f"Registered VDC '{name}' on {chosen}", extra={"vdc": name})
        report.ok("allocate subnet", chosen)
        report.ok("create namespace", namespace)
        report.ok("register", f"status={VdcStatus.CREATED.value}")

        if chosen != probe:
            bound = topology.bind_topology(template, name, chosen)

        try:
            workspace = storage.ensure_vdc_directories(name)
            public_key = await credentials.ensure_ssh_keypair(name)
            topology.write_bound(bound, storage.topology_path(name))
        except (VdcError, OSError) as e:
            raise self._abort_create(name, report, "prepare workspace", name, e) from e
        report.ok("prepare workspace", str(workspace))

        for network in bound.networks:
            spec = NetworkSpec(
                datacenter=name,
                bridge=network.bridge,
                kind=network.kind.value,
                subnet=bound.management_subnet,
                gateway=bound.gateway,
                workspace=workspace,
            )
            try:
                await self.provider.create_network(network.name, spec)
            except ProviderError as e:
                raise self._abort_create(name, report, "create networks", network.name, e) from e
            self.registry.track(name, network=network.name)
        report.ok("create networks", f"{len(bound.networks)} networks")

        failure = await self._provision_vms(name, bound, public_key, workspace)
        if failure is not None:
            vm, cause = failure
            raise self._abort_create(name, report, "create VMs", vm, cause) from cause
        report.ok("create VMs", f"{len(bound.devices)} VMs")

        self.registry.update_status(name, VdcStatus.RUNNING)
        report.ok("mark running")
        return report

    @staticmethod
    def _step_error(report: OperationReport, step: str, resource: str,
                    cause: Exception) -> ProvisioningError:
        """Record a failed step and wrap its cause, report attached."""
        report.fail(step, f"{resource}: {cause}")
        error = ProvisioningError(resource, cause)
        error.report = report
        return error

    def _abort_create(self, name: str, report: OperationReport, step: str,
                      resource: str, cause: Exception) -> ProvisioningError:
        self.registry.update_status(name, VdcStatus.PARTIALLY_PROVISIONED)
        logger.error(f"Provisioning of '{name}' aborted at {resource}: {cause}", extra={"vdc": name})
        return self._step_error(report, step, resource, cause)

    def _vm_spec(self, bound: BoundTopology, device: BoundDevice,
                 public_key: str | None, workspace: Path) -> VmSpec:
        disks_dir = workspace / naming.CATEGORY_DISKS
        disks = [
            DiskSpec(
                path=disks_dir / disk.file,
                format=disk.format,
                size_gb=disk.size_gb,
                backing_image=(device.image or settings.base_image) if disk.root else None,
            )
            for disk in device.disks
        ]
        return VmSpec(
            datacenter=bound.datacenter_name,
            role=device.role.value,
            hostname=device.local_name,
            cpu=device.resources.cpu,
            memory_mb=device.resources.memory,
            interface_count=device.interface_count,
            disks=disks,
            networks=list(device.networks),
            management_ip=device.management_ip,
            gateway=bound.gateway,
            ssh_public_key=public_key,
            workspace=workspace,
        )

    async def _provision_vms(self, name: str, bound: BoundTopology, public_key: str | None,
                             workspace: Path) -> tuple[str, Exception] | None:
        """Create every VM, at most ``max_concurrent_provisioning`` at a time.

        After the first failure no new VM is started; calls already in
        flight are awaited. Returns the first failure, if any.
        """
        semaphore = asyncio.Semaphore(max(1, settings.max_concurrent_provisioning))
        abort = asyncio.Event()
        failures: list[tuple[str, Exception]] = []

        async def launch(device: BoundDevice) -> None:
            async with semaphore:
                if abort.is_set():
                    return
                try:
                    await self.provider.create_vm(
                        device.vm_name, self._vm_spec(bound, device, public_key, workspace)
                    )
                except Exception as e:
                    abort.set()
                    failures.append((device.vm_name, e))
                    return
            if device.is_switch:
                self.registry.track(name, switch=device.vm_name)
            else:
                self.registry.track(name, vm=device.vm_name)

        await asyncio.gather(*(launch(device) for device in bound.devices))
        return failures[0] if failures else None

    # --- destroy ---

    async def destroy(self, name: str) -> OperationReport:
        """Tear down everything a VDC owns, then forget it.

        Raises:
            NotFoundError: If the VDC is not registered
            PartialFailure: If any step failed; the record stays ``destroying``
        """
        record = self.registry.get(name)
        report = OperationReport(operation="destroy", vdc_name=name)
        self.registry.update_status(name, VdcStatus.DESTROYING)

        bound = self._load_bound(record)
        expected_vms = sorted(bound.expected_vms()) if bound else []
        expected_networks = [n.name for n in bound.networks] if bound else []
        failures: list[ItemFailure] = []
        succeeded = 0

        vms = _ordered_union(record.vms, record.switches, expected_vms)
        for vm in vms:
            if await self._teardown(name, vm, self.provider.destroy_vm, failures):
                succeeded += 1
        self._step(report, "destroy VMs", len(vms), failures)

        before = len(failures)
        networks = _ordered_union(record.networks, expected_networks)
        for network in networks:
            if await self._teardown(name, network, self.provider.destroy_network, failures):
                succeeded += 1
        self._step(report, "destroy networks", len(networks), failures[before:])

        try:
            removed = await self.namespaces.destroy(record.namespace)
            report.ok("destroy namespace", record.namespace if removed else "already absent")
            succeeded += 1
        except (NamespaceBusy, NamespaceCommandError, OSError) as e:
            message = e.message if isinstance(e, VdcError) else str(e)
            failures.append(ItemFailure(item=record.namespace, error=message))
            report.fail("destroy namespace", message)

        try:
            removed = storage.remove_vdc_directory(name)
            report.ok("remove files", str(storage.vdc_workspace(name)) if removed else "already absent")
            succeeded += 1
        except OSError as e:
            failures.append(ItemFailure(item=str(storage.vdc_workspace(name)), error=str(e)))
            report.fail("remove files", str(e))

        if failures:
            logger.error(f"Destroy of '{name}' incomplete, record kept", extra={"vdc": name})
            error = PartialFailure("destroy", failures, succeeded=succeeded)
            error.report = report
            raise error

        self.registry.remove(name)
        report.ok("unregister")
        return report

    async def _teardown(self, name: str, resource: str, destroy, failures: list[ItemFailure]) -> bool:
        try:
            await destroy(resource)
        except ResourceMissing:
            logger.debug(f"{resource} already gone")
        except ProviderError as e:
            logger.error(f"Failed to destroy {resource}: {e}", extra={"vdc": name})
            failures.append(ItemFailure(item=resource, error=str(e)))
            return False
        self.registry.untrack(name, resource)
        return True

    @staticmethod
    def _step(report: OperationReport, step: str, total: int, failures: list[ItemFailure]) -> None:
        if failures:
            report.fail(step, "; ".join(f"{f.item}: {f.error}" for f in failures))
        else:
            report.ok(step, f"{total} removed")

    # --- power ---

    def _require_steady(self, record: VdcRecord) -> None:
        if record.status not in (VdcStatus.RUNNING, VdcStatus.STOPPED):
            raise ConflictError(
                f"VDC '{record.name}' is {record.status.value}",
                suggestions=[f"vdc-manager destroy --name {record.name}"],
            )
        if not self.provider.supports(CAP_POWER):
            raise ValidationError(f"Provider '{self.provider.name}' cannot start or stop VMs")

    async def _power(self, record: VdcRecord, bound: BoundTopology | None, action: str,
                     report: OperationReport) -> None:
        vms = _ordered_union(record.vms, record.switches, sorted(bound.expected_vms()) if bound else [])
        call = self.provider.start_vm if action == "start" else self.provider.stop_vm
        failures: list[ItemFailure] = []
        for vm in vms:
            try:
                await call(vm)
            except (ResourceMissing, ProviderError) as e:
                failures.append(ItemFailure(item=vm, error=str(e)))
        self._step(report, f"{action} VMs", len(vms), failures)
        if failures:
            error = PartialFailure(action, failures, succeeded=len(vms) - len(failures))
            error.report = report
            raise error

    async def start(self, name: str) -> OperationReport:
        """Bring a stopped VDC back: namespace, networks, then VMs."""
        record = self.registry.get(name)
        self._require_steady(record)
        report = OperationReport(operation="start", vdc_name=name)
        bound = self._load_bound(record)

        try:
            created = await self.namespaces.create(record.namespace, owner=name)
        except (NamespaceCommandError, OSError) as e:
            raise self._step_error(report, "namespace", record.namespace, e) from e
        report.ok("namespace", "recreated" if created else "present")

        if bound is not None:
            workspace = storage.vdc_workspace(name)
            for network in bound.networks:
                try:
                    await self.provider.create_network(network.name, NetworkSpec(
                        datacenter=name,
                        bridge=network.bridge,
                        kind=network.kind.value,
                        subnet=bound.management_subnet,
                        gateway=bound.gateway,
                        workspace=workspace,
                    ))
                except ProviderError as e:
                    raise self._step_error(report, "networks", network.name, e) from e
            report.ok("networks", f"{len(bound.networks)} active")

        await self._power(record, bound, "start", report)
        self.registry.update_status(name, VdcStatus.RUNNING)
        return report

    async def stop(self, name: str) -> OperationReport:
        record = self.registry.get(name)
        self._require_steady(record)
        report = OperationReport(operation="stop", vdc_name=name)
        await self._power(record, self._load_bound(record), "stop", report)
        self.registry.update_status(name, VdcStatus.STOPPED)
        return report

    # --- queries ---

    async def _vm_states(self, vms: list[str]) -> dict[str, str]:
        states: dict[str, str] = {}
        if not self.provider.supports(CAP_POWER):
            return {vm: VmState.UNKNOWN.value for vm in vms}
        for vm in vms:
            try:
                states[vm] = (await self.provider.vm_state(vm)).value
            except ResourceMissing:
                states[vm] = "missing"
            except ProviderError as e:
                logger.warning(f"Could not query {vm}: {e}")
                states[vm] = VmState.UNKNOWN.value
        return states

    async def list_vdcs(self) -> list[VdcListing]:
        """Every registered VDC with its observed status."""
        listings = []
        for record in self.registry.list():
            if record.status in TRANSITIONAL_STATUSES:
                listings.append(VdcListing(record, record.status.value))
                continue
            if not await self.namespaces.exists(record.namespace):
                listings.append(VdcListing(record, VdcStatus.STOPPED.value))
                continue
            try:
                states = await self._vm_states(record.vms + record.switches)
            except ValidationError as e:
                logger.warning(f"Provider unavailable, showing recorded status: {e.message}")
                listings.append(VdcListing(record, record.status.value))
                continue
            if VmState.RUNNING.value in states.values():
                observed = VdcStatus.RUNNING.value
            elif VmState.UNKNOWN.value in states.values():
                observed = record.status.value
            else:
                observed = VdcStatus.STOPPED.value
            listings.append(VdcListing(record, observed))
        return listings

    async def status(self, name: str) -> VdcStatusInfo:
        record = self.registry.get(name)
        bound = self._load_bound(record)
        prefix = naming.resource_prefix(name)

        try:
            vm_names = await self.provider.list_vms_by_prefix(prefix)
            networks = await self.provider.list_networks_by_prefix(prefix)
        except ProviderError as e:
            raise ProvisioningError(prefix, e) from e
        expected = bound.expected_vms() | bound.expected_networks() if bound else set()

        return VdcStatusInfo(
            record=record,
            namespace_exists=await self.namespaces.exists(record.namespace),
            vms=await self._vm_states(vm_names),
            networks=networks,
            missing=sorted(expected - set(vm_names) - set(networks)),
            bound=bound,
        )

    def _require_bound(self, record: VdcRecord) -> BoundTopology:
        bound = self._load_bound(record)
        if bound is None:
            raise ValidationError(
                f"No bound topology for '{record.name}' at {record.config_file}",
                suggestions=[f"vdc-manager destroy --name {record.name}"],
            )
        return bound

    def resources(self, name: str) -> ResourceSummary:
        record = self.registry.get(name)
        bound = self._require_bound(record)
        disks_dir = storage.category_dir(name, naming.CATEGORY_DISKS)

        summary = ResourceSummary(bound=bound, total_bytes=storage.disk_usage(name))
        for device in bound.devices:
            usage = []
            for disk in device.disks:
                path = disks_dir / disk.file
                usage.append(DiskUsage(disk.file, path.stat().st_size if path.is_file() else None))
            summary.disks[device.vm_name] = usage
        return summary

    def topology(self, name: str) -> BoundTopology:
        return self._require_bound(self.registry.get(name))

    async def cleanup_orphans(self, name: str, force: bool = False,
                              confirm: ConfirmCallback | None = None) -> ReconcileReport:
        """Find and remove resources of ``name`` outside its bound topology.

        Works for unregistered names too, in which case everything carrying
        the ``{name}-`` prefix is an orphan, whatever files are left in its
        directory.

        Raises:
            ValidationError: If a registered VDC has no readable bound topology
            PartialFailure: If some deletions failed (report attached)
        """
        naming.validate_dc_name(name)
        if self.registry.exists(name):
            bound = self._require_bound(self.registry.get(name))
        else:
            logger.warning(f"VDC '{name}' is not registered; every '{name}-' resource is an orphan")
            bound = None

        reconciler = OrphanReconciler(self.provider, name, bound)
        try:
            report = await reconciler.cleanup(force=force, confirm=confirm)
        except ProviderError as e:
            raise ProvisioningError(naming.resource_prefix(name), e) from e
        report.raise_for_errors()
        return report
