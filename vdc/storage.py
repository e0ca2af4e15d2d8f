from __future__ import annotations

import shutil
from pathlib import Path

from vdc import naming
from vdc.config import settings


def project_root() -> Path:
    return Path(settings.project_root)


def vdc_workspace(dc: str) -> Path:
    """Absolute directory holding everything a VDC owns on disk."""
    return project_root() / naming.vdc_dir(dc)


def category_dir(dc: str, category: str) -> Path:
    return vdc_workspace(dc) / category


def resolve(dc: str, category: str, local: str) -> Path:
    """Absolute form of ``naming.path``."""
    return project_root() / naming.path(dc, category, local)


def topology_path(dc: str) -> Path:
    """Get the path to a VDC's bound topology file."""
    return vdc_workspace(dc) / naming.TOPOLOGY_FILE


def ensure_vdc_directories(dc: str) -> Path:
    """Create the VDC directory and all of its category subdirectories."""
    base = vdc_workspace(dc)
    for category in naming.CATEGORIES:
        (base / category).mkdir(parents=True, exist_ok=True)
    return base


def remove_vdc_directory(dc: str) -> bool:
    """Delete the VDC directory tree. Returns True if something was removed."""
    base = vdc_workspace(dc)
    if not base.exists():
        return False
    shutil.rmtree(base)
    return True


def list_disks(dc: str) -> list[Path]:
    """Disk images present under the VDC's disks directory, sorted by name."""
    disks = category_dir(dc, naming.CATEGORY_DISKS)
    if not disks.is_dir():
        return []
    return sorted(p for p in disks.iterdir() if p.is_file())


def disk_usage(dc: str) -> int:
    """Total bytes used by the VDC directory."""
    base = vdc_workspace(dc)
    if not base.exists():
        return 0
    return sum(p.stat().st_size for p in base.rglob("*") if p.is_file())
