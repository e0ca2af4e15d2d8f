"""Tests for the registry store and its lock."""

import json

import pytest

from vdc.errors import AlreadyExists, LockAcquisitionTimeout, NotFoundError, ValidationError
from vdc.locks import RegistryLock
from vdc.registry import RegistryStore
from vdc.schemas import VdcRecord, VdcStatus


def _record(name: str, subnet: str = "192.168.10.0/24") -> VdcRecord:
    return VdcRecord(
        name=name,
        namespace=f"vdc-{name}",
        management_subnet=subnet,
        config_file=f"/tmp/config/vdc-{name}/topology.yaml",
    )


# --- Document format ---

def test_empty_registry(registry):
    assert registry.list() == []
    assert not registry.exists("prod")
    assert registry.used_subnets() == []


def test_insert_writes_versioned_document(registry):
    registry.insert(_record("prod"))

    data = json.loads(registry.path.read_text())
    assert data["version"] == "1.0"
    assert [vdc["name"] for vdc in data["virtual_datacenters"]] == ["prod"]
    entry = data["virtual_datacenters"][0]
    assert entry["status"] == "created"
    assert entry["namespace"] == "vdc-prod"
    assert entry["created_at"].endswith("Z")


def test_insert_duplicate_raises(registry):
    registry.insert(_record("prod"))
    with pytest.raises(AlreadyExists):
        registry.insert(_record("prod", "192.168.11.0/24"))
    assert len(registry.list()) == 1


def test_get_missing_raises(registry):
    with pytest.raises(NotFoundError):
        registry.get("nope")


def test_corrupt_registry_raises_validation_error(registry):
    registry.path.parent.mkdir(parents=True, exist_ok=True)
    registry.path.write_text("{not json")
    with pytest.raises(ValidationError):
        registry.list()


# --- Mutations ---

def test_update_status(registry):
    registry.insert(_record("prod"))
    registry.update_status("prod", VdcStatus.RUNNING)
    assert registry.get("prod").status == VdcStatus.RUNNING


def test_track_and_untrack(registry):
    registry.insert(_record("prod"))
    registry.track("prod", vm="prod-hv1")
    registry.track("prod", switch="prod-leaf1")
    registry.track("prod", network="prod-mgmt")
    registry.track("prod", vm="prod-hv1")

    record = registry.get("prod")
    assert record.vms == ["prod-hv1"]
    assert record.switches == ["prod-leaf1"]
    assert record.networks == ["prod-mgmt"]

    registry.untrack("prod", "prod-leaf1")
    assert registry.get("prod").switches == []


def test_remove(registry):
    registry.insert(_record("prod"))
    registry.insert(_record("dev", "192.168.11.0/24"))
    registry.remove("prod")
    assert [r.name for r in registry.list()] == ["dev"]
    with pytest.raises(NotFoundError):
        registry.remove("prod")


def test_failed_transaction_discards_changes(registry):
    registry.insert(_record("prod"))
    with pytest.raises(RuntimeError):
        with registry.transaction() as doc:
            doc.virtual_datacenters.append(_record("dev", "192.168.11.0/24"))
            raise RuntimeError("boom")
    assert [r.name for r in registry.list()] == ["prod"]


def test_transaction_is_reentrant(registry):
    """Registry queries inside a transaction do not deadlock on the lock."""
    registry.insert(_record("prod"))
    with registry.transaction() as doc:
        assert registry.exists("prod")
        doc.virtual_datacenters[0].status = VdcStatus.STOPPED
    assert registry.get("prod").status == VdcStatus.STOPPED


def test_no_temp_files_left_behind(registry):
    registry.insert(_record("prod"))
    leftovers = [p.name for p in registry.path.parent.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


# --- Lock ---

def test_lock_times_out_when_held_elsewhere(tmp_path):
    path = tmp_path / "registry.json.lock"
    holder = RegistryLock(path, timeout=1.0)
    contender = RegistryLock(path, timeout=0.1, poll_interval=0.01)

    with holder.acquire():
        with pytest.raises(LockAcquisitionTimeout):
            with contender.acquire():
                pass

    with contender.acquire():
        assert contender.held
    assert not contender.held


def test_store_lock_timeout(vdc_settings, tmp_path):
    store = RegistryStore(lock_timeout=0.1)
    other = RegistryLock(store.lock.path)
    with other.acquire():
        with pytest.raises(LockAcquisitionTimeout):
            store.list()
