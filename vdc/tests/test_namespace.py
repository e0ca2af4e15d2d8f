"""Tests for the namespace controller with ``ip`` invocations mocked out."""

import json

import pytest

from vdc.errors import NamespaceBusy, NamespaceExists
from vdc.namespace import NamespaceCommandError, NamespaceManager


class ScriptedIp:
    """Answers ``ip`` commands from an in-memory namespace table."""

    def __init__(self):
        self.namespaces: list[str] = []
        self.links: dict[str, list[str]] = {}
        self.pids: dict[str, list[int]] = {}
        self.fail: set[str] = set()
        self.commands: list[list[str]] = []

    async def __call__(self, cmd: list[str]) -> tuple[int, str, str]:
        self.commands.append(cmd)
        joined = " ".join(cmd)
        for pattern in self.fail:
            if pattern in joined:
                return 1, "", f"{pattern}: Operation not permitted"

        if cmd[:4] == ["ip", "-j", "netns", "list"]:
            return 0, json.dumps([{"name": n} for n in self.namespaces]), ""
        if cmd[:3] == ["ip", "netns", "add"]:
            self.namespaces.append(cmd[3])
            return 0, "", ""
        if cmd[:3] == ["ip", "netns", "del"]:
            self.namespaces.remove(cmd[3])
            return 0, "", ""
        if cmd[:3] == ["ip", "netns", "pids"]:
            return 0, "\n".join(str(p) for p in self.pids.get(cmd[3], [])), ""
        if cmd[:2] == ["ip", "-n"] and cmd[3:6] == ["-j", "link", "show"]:
            links = ["lo", *self.links.get(cmd[2], [])]
            return 0, json.dumps([{"ifname": name} for name in links]), ""
        return 0, "", ""


@pytest.fixture
def ip():
    return ScriptedIp()


@pytest.fixture
def manager(tmp_path, ip):
    manager = NamespaceManager(state_dir=tmp_path / "netns")
    manager._run_cmd = ip
    return manager


@pytest.mark.asyncio
async def test_create_adds_namespace_and_claims_it(manager, ip):
    created = await manager.create("vdc-prod", owner="prod")

    assert created
    assert ip.namespaces == ["vdc-prod"]
    assert manager.owner("vdc-prod") == "prod"
    assert ["ip", "-n", "vdc-prod", "link", "set", "lo", "up"] in ip.commands


@pytest.mark.asyncio
async def test_create_reuses_owned_namespace(manager, ip):
    await manager.create("vdc-prod", owner="prod")
    assert not await manager.create("vdc-prod", owner="prod")
    assert ip.namespaces == ["vdc-prod"]


@pytest.mark.asyncio
async def test_create_refuses_foreign_namespace(manager, ip):
    ip.namespaces.append("vdc-prod")
    with pytest.raises(NamespaceExists) as exc_info:
        await manager.create("vdc-prod", owner="prod")
    assert exc_info.value.owner is None


@pytest.mark.asyncio
async def test_create_refuses_namespace_of_other_vdc(manager):
    await manager.create("vdc-prod", owner="other")
    with pytest.raises(NamespaceExists):
        await manager.create("vdc-prod", owner="prod")


@pytest.mark.asyncio
async def test_create_failure_leaves_no_claim(manager, ip):
    ip.fail.add("netns add")
    with pytest.raises(NamespaceCommandError):
        await manager.create("vdc-prod", owner="prod")
    assert manager.owner("vdc-prod") is None


@pytest.mark.asyncio
async def test_sysctl_failure_is_not_fatal(manager, ip):
    ip.fail.add("sysctl")
    assert await manager.create("vdc-prod", owner="prod")


@pytest.mark.asyncio
async def test_destroy_removes_namespace_and_claim(manager, ip):
    await manager.create("vdc-prod", owner="prod")

    assert await manager.destroy("vdc-prod")
    assert ip.namespaces == []
    assert manager.owner("vdc-prod") is None


@pytest.mark.asyncio
async def test_destroy_absent_namespace(manager):
    assert not await manager.destroy("vdc-ghost")


@pytest.mark.asyncio
async def test_destroy_busy_namespace(manager, ip):
    await manager.create("vdc-prod", owner="prod")
    ip.links["vdc-prod"] = ["veth0"]
    ip.pids["vdc-prod"] = [4242]

    with pytest.raises(NamespaceBusy) as exc_info:
        await manager.destroy("vdc-prod")

    assert exc_info.value.holders == ["interface veth0", "pid 4242"]
    assert ip.namespaces == ["vdc-prod"]
    assert manager.owner("vdc-prod") == "prod"


@pytest.mark.asyncio
async def test_list_namespaces_text_fallback(manager, ip):
    async def old_iproute(cmd):
        return 0, "vdc-a (id: 0)\nvdc-b\n", ""

    manager._run_cmd = old_iproute
    assert await manager.list_namespaces() == ["vdc-a", "vdc-b"]
