"""Resource naming conventions.

Every backend identifier and file path a VDC owns is derived here from
``(datacenter name, local name)``. Names are validated when they are built,
never at the call sites that use them.

Datacenter names may not contain ``-``: the first hyphen of a derived name
separates the datacenter from the local name, so ``{dc}-`` prefixes of two
different VDCs never overlap and distinct ``(dc, local)`` pairs never collide.
"""

from __future__ import annotations

import re

from vdc.errors import InvalidName

NAMESPACE_PREFIX = "vdc-"
BRIDGE_PREFIX = "vbr"
VDC_DIR_PREFIX = "vdc-"

DC_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,31}$")
LOCAL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")
BRIDGE_PART_RE = re.compile(r"^[A-Za-z0-9_]+$")

MAX_RESOURCE_NAME = 64
IFNAMSIZ = 15  # Linux interface names, NUL excluded

RESOURCE_KINDS = ("vm", "network")

# Subdirectories of config/vdc-{dc}/
CATEGORY_DISKS = "disks"
CATEGORY_CLOUD_INIT = "cloud-init"
CATEGORY_NETWORK_XMLS = "network-xmls"
CATEGORY_SSH_KEYS = "ssh-keys"
CATEGORY_BGP_CONFIGS = "bgp-configs"
CATEGORIES = (
    CATEGORY_DISKS,
    CATEGORY_CLOUD_INIT,
    CATEGORY_NETWORK_XMLS,
    CATEGORY_SSH_KEYS,
    CATEGORY_BGP_CONFIGS,
)

TOPOLOGY_FILE = "topology.yaml"


def validate_dc_name(dc: str) -> str:
    """Check a datacenter name and return it unchanged."""
    if not isinstance(dc, str) or not DC_NAME_RE.match(dc):
        raise InvalidName(
            str(dc),
            "datacenter names start with a letter and contain only letters, "
            "digits and '_' (max 32 characters)",
        )
    return dc


def validate_local_name(local: str) -> str:
    """Check a template-local device/network name and return it unchanged."""
    if not isinstance(local, str) or not LOCAL_NAME_RE.match(local):
        raise InvalidName(
            str(local),
            "local names start with a letter or digit and contain only "
            "letters, digits, '_', '.' and '-' (max 63 characters)",
        )
    return local


def resource_name(kind: str, dc: str, local: str) -> str:
    """Derive a validated backend identifier for a VDC-owned resource."""
    if kind not in RESOURCE_KINDS:
        raise ValueError(f"Unknown resource kind: {kind}")
    name = f"{validate_dc_name(dc)}-{validate_local_name(local)}"
    if len(name) > MAX_RESOURCE_NAME:
        raise InvalidName(name, f"longer than {MAX_RESOURCE_NAME} characters")
    return name


def vm_name(dc: str, local: str) -> str:
    return resource_name("vm", dc, local)


def network_name(dc: str, local: str) -> str:
    return resource_name("network", dc, local)


def bridge_name(dc: str, bridge_type: str, bridge_id: int | str) -> str:
    """Derive a Linux bridge name: ``vbr-{dc}-{type}-{id}``."""
    validate_dc_name(dc)
    for part in (str(bridge_type), str(bridge_id)):
        if not BRIDGE_PART_RE.match(part):
            raise InvalidName(part, "bridge type and id must be alphanumeric")
    name = f"{BRIDGE_PREFIX}-{dc}-{bridge_type}-{bridge_id}"
    if len(name) > IFNAMSIZ:
        raise InvalidName(
            name, f"bridge names are limited to {IFNAMSIZ} characters; use a shorter VDC name"
        )
    return name


def namespace_id(dc: str) -> str:
    """Network namespace of a VDC."""
    return f"{NAMESPACE_PREFIX}{validate_dc_name(dc)}"


def resource_prefix(dc: str) -> str:
    """Prefix carried by every backend resource of a VDC."""
    return f"{validate_dc_name(dc)}-"


def owns(dc: str, name: str) -> bool:
    """Return True if a backend name belongs to datacenter ``dc``."""
    return name.startswith(resource_prefix(dc)) and len(name) > len(dc) + 1


def vdc_dir(dc: str) -> str:
    """Directory of a VDC, relative to the project root."""
    return f"config/{VDC_DIR_PREFIX}{validate_dc_name(dc)}"


def path(dc: str, category: str, local: str) -> str:
    """Path of a VDC-owned file, relative to the project root."""
    if category not in CATEGORIES:
        raise ValueError(f"Unknown path category: {category}")
    if not local or "/" in local or local in (".", ".."):
        raise InvalidName(local, "file names may not be empty or contain '/'")
    return f"{vdc_dir(dc)}/{category}/{local}"


def disk_file(vm: str, disk: str | None = None, fmt: str = "qcow2") -> str:
    """Disk image file name for a VM's root disk or one of its extra disks."""
    if disk is None:
        return f"{vm}.{fmt}"
    return f"{vm}-{validate_local_name(disk)}.{fmt}"


def p2p_local_name(link_id: int) -> str:
    return f"p2p-link-{link_id}"


MGMT_LOCAL_NAME = "mgmt"
