"""Orphan detection and cleanup for a single VDC.

A resource is an orphan when it is named as belonging to the datacenter
(``{dc}-`` prefix, and datacenter label where the backend supports labels)
but is absent from the set the bound topology expects. Disk images in the
VDC's ``disks/`` directory that no bound device references are orphans too.

These accumulate when ``create`` aborts midway, when a template is edited by
hand, or when someone provisions under the VDC's prefix outside the manager.

Deletion never touches a name that does not carry the datacenter's prefix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from vdc import naming, storage
from vdc.errors import ItemFailure, PartialFailure
from vdc.providers.base import CAP_LABELS, Provider, ProviderError, ResourceMissing
from vdc.schemas import BoundTopology, Orphan, OrphanKind

logger = logging.getLogger(__name__)

# VMs go first: networks cannot be torn down while NICs are attached
DELETE_ORDER = (OrphanKind.VM, OrphanKind.NETWORK, OrphanKind.DISK)

# Called once per non-empty batch; returning False skips the batch
ConfirmCallback = Callable[[OrphanKind, list[Orphan]], bool]


@dataclass
class ReconcileReport:
    """Result of a reconciliation pass."""
    datacenter: str
    orphans: list[Orphan] = field(default_factory=list)
    deleted: list[Orphan] = field(default_factory=list)
    declined: list[Orphan] = field(default_factory=list)
    errors: list[ItemFailure] = field(default_factory=list)

    def by_kind(self, kind: OrphanKind) -> list[Orphan]:
        return [o for o in self.orphans if o.kind == kind]

    def raise_for_errors(self) -> None:
        """Raise PartialFailure if any deletion failed."""
        if self.errors:
            error = PartialFailure("cleanup-orphans", self.errors, succeeded=len(self.deleted))
            error.report = self
            raise error

    def to_dict(self) -> dict[str, Any]:
        return {
            "datacenter": self.datacenter,
            "orphans": [o.model_dump(mode="json") for o in self.orphans],
            "deleted": [o.identifier for o in self.deleted],
            "declined": [o.identifier for o in self.declined],
            "errors": [e.to_dict() for e in self.errors],
        }


class OrphanReconciler:
    """Finds and removes resources a VDC owns by name but no longer expects.

    Usage:
        reconciler = OrphanReconciler(provider, "prod", bound)
        orphans = await reconciler.find_orphans()
        report = await reconciler.cleanup(force=True)
    """

    def __init__(self, provider: Provider, datacenter: str, bound: BoundTopology | None):
        self.provider = provider
        self.datacenter = naming.validate_dc_name(datacenter)
        self.bound = bound

    @property
    def prefix(self) -> str:
        return naming.resource_prefix(self.datacenter)

    def _owned(self, names: list[str]) -> list[str]:
        return sorted(n for n in set(names) if naming.owns(self.datacenter, n))

    async def _actual_vms(self) -> list[str]:
        vms = await self.provider.list_vms_by_prefix(self.prefix)
        if self.provider.supports(CAP_LABELS):
            labelled = set(await self.provider.list_vms_by_label(self.datacenter))
            vms = [vm for vm in vms if vm in labelled]
        return self._owned(vms)

    async def _actual_networks(self) -> list[str]:
        return self._owned(await self.provider.list_networks_by_prefix(self.prefix))

    async def find_orphans(self) -> list[Orphan]:
        """Every owned resource outside the expected set, VMs first."""
        expected_vms = self.bound.expected_vms() if self.bound else set()
        expected_networks = self.bound.expected_networks() if self.bound else set()
        expected_disks = self.bound.expected_disks() if self.bound else set()

        orphans = [
            Orphan(kind=OrphanKind.VM, identifier=vm)
            for vm in await self._actual_vms()
            if vm not in expected_vms
        ]
        orphans += [
            Orphan(kind=OrphanKind.NETWORK, identifier=net)
            for net in await self._actual_networks()
            if net not in expected_networks
        ]
        orphans += [
            Orphan(kind=OrphanKind.DISK, identifier=disk.name)
            for disk in storage.list_disks(self.datacenter)
            if disk.name not in expected_disks
        ]

        if orphans:
            logger.info(
                f"Found {len(orphans)} orphaned resources for {self.datacenter}",
                extra={"vdc": self.datacenter},
            )
        return orphans

    async def _delete(self, orphan: Orphan) -> None:
        if orphan.kind == OrphanKind.DISK:
            disks_dir = storage.category_dir(self.datacenter, naming.CATEGORY_DISKS)
            path = disks_dir / orphan.identifier
            if path.parent != disks_dir:
                raise ProviderError(orphan.identifier, "refusing to delete outside the VDC disks directory")
            path.unlink(missing_ok=True)
            return

        if not naming.owns(self.datacenter, orphan.identifier):
            raise ProviderError(orphan.identifier, f"does not carry prefix '{self.prefix}'")
        try:
            if orphan.kind == OrphanKind.VM:
                await self.provider.destroy_vm(orphan.identifier)
            else:
                await self.provider.destroy_network(orphan.identifier)
        except ResourceMissing:
            logger.debug(f"{orphan.identifier} already gone")

    async def cleanup(self, force: bool = False, confirm: ConfirmCallback | None = None) -> ReconcileReport:
        """Delete orphans batch by batch.

        Without ``force`` each batch is deleted only if ``confirm`` approves
        it; with no callback nothing is deleted. Failed deletions are
        collected in the report, they never stop the remaining ones.
        """
        report = ReconcileReport(datacenter=self.datacenter)
        report.orphans = await self.find_orphans()

        for kind in DELETE_ORDER:
            batch = report.by_kind(kind)
            if not batch:
                continue
            if not force and (confirm is None or not confirm(kind, batch)):
                logger.info(f"Skipped {len(batch)} orphaned {kind.value}(s)")
                report.declined.extend(batch)
                continue

            for orphan in batch:
                try:
                    await self._delete(orphan)
                except (ProviderError, OSError) as e:
                    logger.error(f"Failed to delete orphaned {kind.value} {orphan.identifier}: {e}")
                    report.errors.append(ItemFailure(item=orphan.identifier, error=str(e)))
                else:
                    logger.info(f"Deleted orphaned {kind.value}: {orphan.identifier}")
                    report.deleted.append(orphan)

        return report
