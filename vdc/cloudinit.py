"""NoCloud seed generation for VDC VMs.

Each VM gets ``config/vdc-{dc}/cloud-init/{vm}/`` holding ``user-data``,
``meta-data`` and ``network-config``, packed into ``{vm}-cidata.iso`` next
to it. The guest sees the management NIC as ``enp1s0`` and data NICs as
``enp2s0``, ``enp3s0``, ... in attachment order; data NICs only get IPv6
link-local addresses so the fabric can run unnumbered BGP.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ISO_TOOLS = ("genisoimage", "mkisofs")
SEED_FILES = ("user-data", "meta-data", "network-config")
DNS_SERVERS = ["8.8.8.8", "8.8.4.4"]


def data_interface_name(index: int) -> str:
    """Guest name of the ``index``-th (0-based) data NIC."""
    return f"enp{index + 2}s0"


def user_data(hostname: str, ssh_public_key: str | None = None) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "hostname": hostname,
        "manage_etc_hosts": True,
        "ssh_pwauth": False,
        "write_files": [
            {
                "path": "/etc/sysctl.d/99-forwarding.conf",
                "content": "net.ipv4.ip_forward=1\nnet.ipv6.conf.all.forwarding=1\n",
                "permissions": "0644",
            }
        ],
        "runcmd": [["sysctl", "-p", "/etc/sysctl.d/99-forwarding.conf"]],
    }
    if ssh_public_key:
        doc["users"] = [
            "default",
            {
                "name": "vdc",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "ssh_authorized_keys": [ssh_public_key],
            },
        ]
    return doc


def network_config(management_ip: str | None, gateway: str | None,
                   data_interfaces: int) -> dict[str, Any]:
    mgmt: dict[str, Any] = {"dhcp4": management_ip is None}
    if management_ip:
        mgmt["addresses"] = [management_ip]
        if gateway:
            mgmt["routes"] = [{"to": "0.0.0.0/0", "via": gateway}]
        mgmt["nameservers"] = {"addresses": list(DNS_SERVERS)}

    ethernets: dict[str, Any] = {"enp1s0": mgmt}
    for index in range(data_interfaces):
        ethernets[data_interface_name(index)] = {
            "dhcp4": False,
            "dhcp6": False,
            "accept-ra": False,
            "link-local": ["ipv6"],
        }
    return {"version": 2, "ethernets": ethernets}


def _dump(doc: dict[str, Any], header: str | None = None) -> str:
    text = yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)
    return f"{header}\n{text}" if header else text


def write_seed(seed_dir: Path, vm_name: str, hostname: str, *,
               management_ip: str | None = None, gateway: str | None = None,
               data_interfaces: int = 0, ssh_public_key: str | None = None) -> Path:
    """Write the three seed files for ``vm_name`` into ``seed_dir``."""
    seed_dir.mkdir(parents=True, exist_ok=True)
    (seed_dir / "user-data").write_text(
        _dump(user_data(hostname, ssh_public_key), header="#cloud-config"),
        encoding="utf-8",
    )
    (seed_dir / "meta-data").write_text(
        _dump({"instance-id": vm_name, "local-hostname": hostname}), encoding="utf-8"
    )
    (seed_dir / "network-config").write_text(
        _dump(network_config(management_ip, gateway, data_interfaces)), encoding="utf-8"
    )
    return seed_dir


async def build_iso(seed_dir: Path, iso_path: Path) -> Path | None:
    """Pack a seed directory into a ``cidata`` ISO.

    Returns:
        The ISO path, or None if no ISO tool is installed
    """
    tool = next((t for t in ISO_TOOLS if shutil.which(t)), None)
    if tool is None:
        logger.warning(f"Neither {' nor '.join(ISO_TOOLS)} found; skipping seed ISO for {seed_dir.name}")
        return None

    cmd = [
        tool, "-output", str(iso_path), "-volid", "cidata", "-joliet", "-rock",
        *(str(seed_dir / name) for name in SEED_FILES),
    ]
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    if process.returncode != 0:
        raise RuntimeError(f"{tool} failed for {iso_path.name}: {stderr.decode().strip()}")
    logger.info(f"Created cloud-init seed: {iso_path}")
    return iso_path
