"""Network namespace management for VDC isolation.

Each VDC gets exactly one network namespace, ``vdc-{name}``, which hosts its
virtual links and addresses. The namespace is created and removed with
``ip netns add`` / ``ip netns del``; the kernel treats both as atomic, so a
namespace is never half-created.

Ownership:
    ``ip netns`` has no notion of who created a namespace, so after a
    successful ``add`` we drop a marker file ``<state_dir>/<id>.owner``
    containing the VDC name. A namespace with a matching marker is reused
    (e.g. when ``create`` is retried after a crash); any other namespace with
    the same id is refused with ``NamespaceExists``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from vdc.config import settings
from vdc.errors import NamespaceBusy, NamespaceExists

logger = logging.getLogger(__name__)


class NamespaceCommandError(RuntimeError):
    """An ``ip`` invocation failed."""

    def __init__(self, cmd: list[str], code: int, stderr: str):
        self.cmd = cmd
        self.code = code
        self.stderr = stderr
        super().__init__(f"{' '.join(cmd)} failed ({code}): {stderr.strip()}")


class NamespaceManager:
    """Creates, inspects and destroys per-VDC network namespaces.

    Usage:
        manager = NamespaceManager()
        await manager.create("vdc-prod", owner="prod")
        ...
        await manager.destroy("vdc-prod")
    """

    def __init__(self, state_dir: Path | None = None, use_sudo: bool = False):
        self.state_dir = Path(state_dir) if state_dir else settings.namespace_state_path
        self._sudo = ["sudo"] if use_sudo else []

    async def _run_cmd(self, cmd: list[str]) -> tuple[int, str, str]:
        """Run a command asynchronously.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        process = await asyncio.create_subprocess_exec(
            *self._sudo,
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return (
            process.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def _check(self, cmd: list[str]) -> str:
        code, stdout, stderr = await self._run_cmd(cmd)
        if code != 0:
            raise NamespaceCommandError(cmd, code, stderr)
        return stdout

    # --- Ownership markers ---

    def _marker(self, namespace_id: str) -> Path:
        return self.state_dir / f"{namespace_id}.owner"

    def owner(self, namespace_id: str) -> str | None:
        marker = self._marker(namespace_id)
        if not marker.exists():
            return None
        return marker.read_text(encoding="utf-8").strip() or None

    def _claim(self, namespace_id: str, owner: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._marker(namespace_id).write_text(owner + "\n", encoding="utf-8")

    def _release(self, namespace_id: str) -> None:
        marker = self._marker(namespace_id)
        if marker.exists():
            marker.unlink()

    # --- Queries ---

    async def list_namespaces(self) -> list[str]:
        code, stdout, _ = await self._run_cmd(["ip", "-j", "netns", "list"])
        if code != 0 or not stdout.strip():
            return []
        try:
            return [entry.get("name", "") for entry in json.loads(stdout)]
        except json.JSONDecodeError:
            # Older iproute2 ignores -j for netns: "name (id: N)" per line
            return [line.split()[0] for line in stdout.splitlines() if line.strip()]

    async def exists(self, namespace_id: str) -> bool:
        return namespace_id in await self.list_namespaces()

    async def list_interfaces(self, namespace_id: str) -> list[str]:
        """Names of the non-loopback interfaces inside the namespace."""
        stdout = await self._check(
            ["ip", "-n", namespace_id, "-j", "link", "show"]
        )
        try:
            links = json.loads(stdout) if stdout.strip() else []
        except json.JSONDecodeError:
            return []
        return [link.get("ifname", "") for link in links if link.get("ifname") != "lo"]

    async def list_pids(self, namespace_id: str) -> list[int]:
        stdout = await self._check(["ip", "netns", "pids", namespace_id])
        return [int(pid) for pid in stdout.split() if pid.isdigit()]

    # --- Lifecycle ---

    async def create(self, namespace_id: str, owner: str) -> bool:
        """Create the namespace for ``owner``.

        Returns:
            True if a namespace was created, False if an owned one was reused

        Raises:
            NamespaceExists: If the id is taken by a namespace we do not own
            NamespaceCommandError: If ``ip netns add`` fails
        """
        if await self.exists(namespace_id):
            current = self.owner(namespace_id)
            if current == owner:
                logger.warning(f"Namespace '{namespace_id}' already exists, reusing it")
                return False
            raise NamespaceExists(namespace_id, current)

        await self._check(["ip", "netns", "add", namespace_id])
        self._claim(namespace_id, owner)

        await self._check(["ip", "-n", namespace_id, "link", "set", "lo", "up"])
        for key in ("net.ipv4.ip_forward=1", "net.ipv6.conf.all.forwarding=1"):
            code, _, stderr = await self._run_cmd(
                ["ip", "netns", "exec", namespace_id, "sysctl", "-w", key]
            )
            if code != 0:
                logger.warning(f"Could not set {key} in {namespace_id}: {stderr.strip()}")

        logger.info(f"Created namespace: {namespace_id}")
        return True

    async def destroy(self, namespace_id: str) -> bool:
        """Delete the namespace.

        Returns:
            True if deleted, False if it did not exist

        Raises:
            NamespaceBusy: If interfaces or processes still live in it
            NamespaceCommandError: If ``ip netns del`` fails
        """
        if not await self.exists(namespace_id):
            logger.warning(f"Namespace '{namespace_id}' does not exist")
            self._release(namespace_id)
            return False

        holders = [f"interface {name}" for name in await self.list_interfaces(namespace_id)]
        holders += [f"pid {pid}" for pid in await self.list_pids(namespace_id)]
        if holders:
            raise NamespaceBusy(namespace_id, holders)

        await self._check(["ip", "netns", "del", namespace_id])
        self._release(namespace_id)
        logger.info(f"Destroyed namespace: {namespace_id}")
        return True


# Module-level singleton
_namespace_manager: NamespaceManager | None = None


def get_namespace_manager() -> NamespaceManager:
    """Get the global NamespaceManager instance."""
    global _namespace_manager
    if _namespace_manager is None:
        _namespace_manager = NamespaceManager()
    return _namespace_manager
