"""Unit tests for libvirt XML generation and provider registry.

No libvirt daemon is needed: the XML builders are pure and the provider
runs against a mocked connection.
"""

import threading
import xml.etree.ElementTree as ET
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vdc.errors import ValidationError
from vdc.providers import libvirt as libvirt_provider
from vdc.providers.base import DiskSpec, NetworkSpec, VmSpec
from vdc.providers.registry import ProviderRegistry, get_provider, register_provider

from conftest import FakeProvider


def _spec() -> VmSpec:
    return VmSpec(
        datacenter="dc1",
        role="leaf",
        hostname="leaf1",
        cpu=2,
        memory_mb=4096,
        disks=[
            DiskSpec(path=Path("/vdc/disks/dc1-leaf1.qcow2"), backing_image="sonic.qcow2"),
            DiskSpec(path=Path("/vdc/disks/dc1-leaf1-data.qcow2"), size_gb=10),
        ],
        networks=["dc1-mgmt", "dc1-p2p-link-0"],
        management_ip="192.168.10.13/24",
        gateway="192.168.10.1",
    )


# --- Domain XML ---

def test_domain_xml_disks_and_nics():
    root = ET.fromstring(libvirt_provider.generate_domain_xml("dc1-leaf1", _spec()))

    assert root.findtext("name") == "dc1-leaf1"
    assert root.findtext("memory") == "4096"
    targets = [d.find("target").get("dev") for d in root.findall(".//disk[@device='disk']")]
    assert targets == ["vda", "vdb"]
    sources = [i.find("source").get("network") for i in root.findall(".//interface")]
    assert sources == ["dc1-mgmt", "dc1-p2p-link-0"]


def test_domain_xml_attaches_seed_iso():
    xml = libvirt_provider.generate_domain_xml("dc1-leaf1", _spec(), Path("/vdc/cloud-init/seed.iso"))
    cdrom = ET.fromstring(xml).find(".//disk[@device='cdrom']")
    assert cdrom.find("source").get("file") == "/vdc/cloud-init/seed.iso"


def test_domain_xml_carries_labels():
    xml = libvirt_provider.generate_domain_xml("dc1-leaf1", _spec())
    assert libvirt_provider.metadata_labels(xml) == {
        "datacenter": "dc1",
        "role": "leaf",
        "hostname": "leaf1",
    }


def test_metadata_labels_absent():
    assert libvirt_provider.metadata_labels("<domain><name>x</name></domain>") == {}
    assert libvirt_provider.metadata_labels("not xml") == {}


def test_mac_addresses_are_stable_and_distinct():
    first = libvirt_provider.generate_mac_address("dc1-leaf1", 0)
    assert first == libvirt_provider.generate_mac_address("dc1-leaf1", 0)
    assert first != libvirt_provider.generate_mac_address("dc1-leaf1", 1)
    assert first.startswith("52:54:00:")


# --- Network XML ---

def test_management_network_is_nat_with_gateway():
    spec = NetworkSpec(datacenter="dc1", bridge="vbr-dc1-m-0", kind="management",
                       subnet="192.168.10.0/24", gateway="192.168.10.1")
    root = ET.fromstring(libvirt_provider.generate_network_xml("dc1-mgmt", spec))

    assert root.find("forward").get("mode") == "nat"
    assert root.find("bridge").get("name") == "vbr-dc1-m-0"
    assert root.find("ip").get("address") == "192.168.10.1"
    assert root.find("ip").get("netmask") == "255.255.255.0"


def test_p2p_network_is_isolated():
    spec = NetworkSpec(datacenter="dc1", bridge="vbr-dc1-l-0", kind="p2p")
    root = ET.fromstring(libvirt_provider.generate_network_xml("dc1-p2p-link-0", spec))
    assert root.find("forward") is None
    assert root.find("ip") is None


# --- Registry ---

@pytest.fixture
def clean_registry():
    registry = ProviderRegistry()
    registry.reset()
    yield registry
    registry.reset()


def test_registry_is_singleton():
    assert ProviderRegistry() is ProviderRegistry()


def test_registered_provider_is_cached(clean_registry):
    register_provider("fake", FakeProvider)
    provider = get_provider("fake")
    assert provider is get_provider("fake")
    assert "fake" in clean_registry.list_available()


def test_unknown_provider(clean_registry):
    with pytest.raises(ValidationError):
        get_provider("vmware")


@pytest.mark.skipif(libvirt_provider.LIBVIRT_AVAILABLE, reason="libvirt-python is installed")
def test_libvirt_provider_unavailable(clean_registry):
    with pytest.raises(ValidationError, match="not available"):
        get_provider("libvirt")


# --- Provider threading ---

@pytest.mark.asyncio
async def test_prefix_listing_runs_on_libvirt_thread():
    threads = []

    def domain(name):
        dom = MagicMock()

        def _name():
            threads.append(threading.current_thread().name)
            return name

        dom.name.side_effect = _name
        return dom

    with patch.object(libvirt_provider, "LIBVIRT_AVAILABLE", True), \
            patch.object(libvirt_provider, "libvirt", MagicMock()):
        provider = libvirt_provider.LibvirtProvider(uri="test:///default")
        provider._conn = MagicMock()
        provider._conn.isAlive.return_value = True
        provider._conn.listAllDomains.return_value = [domain("dc1-hv1"), domain("dc10-hv1"), domain("other")]

        assert await provider.list_vms_by_prefix("dc1-") == ["dc1-hv1"]

    assert threads
    assert all(name.startswith("libvirt") for name in threads)
