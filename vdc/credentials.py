"""Per-VDC SSH credentials.

Every VDC gets one keypair under ``config/vdc-{dc}/ssh-keys/``; its public
half is injected into each VM so the operator can reach the fabric. Keys are
generated with ``ssh-keygen`` and reused when ``create`` is re-run.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from vdc import naming, storage
from vdc.config import settings
from vdc.errors import ProvisioningError

logger = logging.getLogger(__name__)

PRIVATE_KEY_NAME = "id_vdc"


def key_paths(dc: str) -> tuple[Path, Path]:
    """(private, public) key paths of a VDC."""
    private = storage.resolve(dc, naming.CATEGORY_SSH_KEYS, PRIVATE_KEY_NAME)
    return private, private.with_name(private.name + ".pub")


def read_public_key(dc: str) -> str | None:
    _, public = key_paths(dc)
    if not public.is_file():
        return None
    key = public.read_text(encoding="utf-8").strip()
    if key and not key.startswith("ssh-"):
        logger.warning(f"Public key {public} does not start with 'ssh-'")
    return key or None


async def ensure_ssh_keypair(dc: str, key_type: str | None = None) -> str:
    """Generate the VDC keypair unless it already exists.

    Returns:
        The public key string

    Raises:
        ProvisioningError: If ssh-keygen is missing or fails
    """
    private, public = key_paths(dc)
    if private.is_file() and public.is_file():
        existing = read_public_key(dc)
        if existing:
            return existing

    private.parent.mkdir(parents=True, exist_ok=True)
    for stale in (private, public):
        if stale.exists():
            stale.unlink()

    cmd = [
        "ssh-keygen",
        "-t", key_type or settings.ssh_key_type,
        "-f", str(private),
        "-N", "",
        "-C", f"vdc-manager@{dc}",
        "-q",
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise ProvisioningError(str(private), "ssh-keygen not found; install openssh-client") from None
    _, stderr = await process.communicate()
    if process.returncode != 0:
        raise ProvisioningError(str(private), f"ssh-keygen failed: {stderr.decode().strip()}")

    os.chmod(private, 0o600)
    os.chmod(public, 0o644)
    logger.info(f"Generated SSH keypair: {private}", extra={"vdc": dc})

    key = read_public_key(dc)
    if key is None:
        raise ProvisioningError(str(public), "generated public key is empty")
    return key
