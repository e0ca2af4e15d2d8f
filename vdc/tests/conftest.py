"""Shared pytest fixtures for vdc-manager tests."""
from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from vdc import credentials
from vdc.config import settings
from vdc.errors import NamespaceBusy, NamespaceExists
from vdc.orchestrator import VdcOrchestrator
from vdc.providers.base import (
    CAP_LABELS,
    CAP_POWER,
    NetworkSpec,
    Provider,
    ProviderError,
    ResourceMissing,
    VmHandle,
    VmSpec,
    VmState,
)
from vdc.registry import RegistryStore

TEST_PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKey vdc-manager@test"

SAMPLE_TEMPLATE = """\
global:
  datacenter_name: template-dc
  bgp:
    ecmp: true
hypervisors:
  - name: hv1
    router_id: 10.255.0.11
    asn: 65101
    resources: {cpu: 4, memory: 8192, disk: 80}
    data_interfaces:
      - name: enp2s0
    additional_disks:
      - name: ceph
        size: 100
  - name: hv2
    router_id: 10.255.0.12
    asn: 65102
    data_interfaces:
      - name: enp2s0
switches:
  leaf:
    - name: leaf1
      router_id: 10.255.1.1
      asn: 65001
      ports: 32
    - name: leaf2
      router_id: 10.255.1.2
      asn: 65002
      ports: 32
cabling:
  - source: {device: hv1, interface: enp2s0}
    destination: {device: leaf1, interface: Ethernet0}
  - source: {device: hv2, interface: enp2s0}
    destination: {device: leaf2, interface: Ethernet0}
"""


class FakeProvider(Provider):
    """In-memory provider with failure injection."""

    def __init__(self, capabilities: list[str] | None = None):
        self.vms: dict[str, VmState] = {}
        self.vm_specs: dict[str, VmSpec] = {}
        self.labels: dict[str, str] = {}  # vm -> datacenter
        self.networks: dict[str, NetworkSpec | None] = {}
        self.fail_create: set[str] = set()
        self.fail_destroy: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._capabilities = [CAP_LABELS, CAP_POWER] if capabilities is None else capabilities

    @property
    def name(self) -> str:
        return "fake"

    @property
    def capabilities(self) -> list[str]:
        return self._capabilities

    def add_vm(self, name: str, datacenter: str | None = None,
               state: VmState = VmState.RUNNING) -> None:
        """Put a VM in place without going through create_vm."""
        self.vms[name] = state
        if datacenter:
            self.labels[name] = datacenter

    async def create_vm(self, name: str, spec: VmSpec) -> VmHandle:
        self.calls.append(("create_vm", name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if name in self.fail_create:
                raise ProviderError(name, "injected create failure")
            self.vms[name] = VmState.RUNNING
            self.vm_specs[name] = spec
            self.labels[name] = spec.datacenter
            return VmHandle(name=name, state=VmState.RUNNING)
        finally:
            self.in_flight -= 1

    async def destroy_vm(self, name: str) -> None:
        self.calls.append(("destroy_vm", name))
        if name in self.fail_destroy:
            raise ProviderError(name, "injected destroy failure")
        if name not in self.vms:
            raise ResourceMissing(name)
        del self.vms[name]
        self.labels.pop(name, None)

    async def list_vms_by_prefix(self, prefix: str) -> list[str]:
        return sorted(n for n in self.vms if n.startswith(prefix))

    async def create_network(self, name: str, spec: NetworkSpec) -> None:
        self.calls.append(("create_network", name))
        if name in self.fail_create:
            raise ProviderError(name, "injected create failure")
        self.networks[name] = spec

    async def destroy_network(self, name: str) -> None:
        self.calls.append(("destroy_network", name))
        if name in self.fail_destroy:
            raise ProviderError(name, "injected destroy failure")
        if name not in self.networks:
            raise ResourceMissing(name)
        del self.networks[name]

    async def list_networks_by_prefix(self, prefix: str) -> list[str]:
        return sorted(n for n in self.networks if n.startswith(prefix))

    async def list_vms_by_label(self, datacenter: str) -> list[str]:
        return sorted(n for n, dc in self.labels.items() if dc == datacenter and n in self.vms)

    async def start_vm(self, name: str) -> VmState:
        if name not in self.vms:
            raise ResourceMissing(name)
        self.vms[name] = VmState.RUNNING
        return VmState.RUNNING

    async def stop_vm(self, name: str) -> VmState:
        if name not in self.vms:
            raise ResourceMissing(name)
        self.vms[name] = VmState.STOPPED
        return VmState.STOPPED

    async def vm_state(self, name: str) -> VmState:
        if name not in self.vms:
            raise ResourceMissing(name)
        return self.vms[name]


class FakeNamespaceManager:
    """In-memory stand-in for NamespaceManager."""

    def __init__(self):
        self.namespaces: dict[str, str | None] = {}  # id -> owner
        self.busy: dict[str, list[str]] = {}
        self.calls: list[tuple[str, str]] = []

    async def exists(self, namespace_id: str) -> bool:
        return namespace_id in self.namespaces

    async def create(self, namespace_id: str, owner: str) -> bool:
        self.calls.append(("create", namespace_id))
        if namespace_id in self.namespaces:
            if self.namespaces[namespace_id] == owner:
                return False
            raise NamespaceExists(namespace_id, self.namespaces[namespace_id])
        self.namespaces[namespace_id] = owner
        return True

    async def destroy(self, namespace_id: str) -> bool:
        self.calls.append(("destroy", namespace_id))
        if namespace_id not in self.namespaces:
            return False
        if self.busy.get(namespace_id):
            raise NamespaceBusy(namespace_id, self.busy[namespace_id])
        del self.namespaces[namespace_id]
        return True


@pytest.fixture
def vdc_settings(tmp_path: Path, monkeypatch):
    """Point every on-disk location at a temporary project root."""
    monkeypatch.setattr(settings, "project_root", str(tmp_path / "root"))
    monkeypatch.setattr(settings, "registry_file", "")
    monkeypatch.setattr(settings, "namespace_state_dir", "")
    monkeypatch.setattr(settings, "lock_acquire_timeout", 1.0)
    monkeypatch.setattr(settings, "max_concurrent_provisioning", 4)
    return settings


@pytest.fixture
def template_file(tmp_path: Path) -> Path:
    path = tmp_path / "topology.yaml"
    path.write_text(SAMPLE_TEMPLATE)
    return path


@pytest.fixture
def registry(vdc_settings) -> RegistryStore:
    return RegistryStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def namespaces() -> FakeNamespaceManager:
    return FakeNamespaceManager()


@pytest.fixture
def orchestrator(registry, namespaces, provider, monkeypatch) -> VdcOrchestrator:
    monkeypatch.setattr(credentials, "ensure_ssh_keypair", AsyncMock(return_value=TEST_PUBLIC_KEY))
    return VdcOrchestrator(registry=registry, namespaces=namespaces, provider=provider)
