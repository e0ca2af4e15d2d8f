"""Durable registry of virtual datacenters.

The registry is a single JSON document::

    {"version": "1.0", "virtual_datacenters": [<record>, ...]}

It is the source of truth for which VDCs exist and what state they are in.
Every mutation reads the whole document, changes it in memory and writes it
back through a temp file + ``os.replace``, all while holding the registry
lock. Readers therefore see either the old or the new document, never a
half-written record. Fine for tens of records; not built for heavy write
concurrency.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from vdc.config import settings
from vdc.errors import AlreadyExists, NotFoundError, ValidationError
from vdc.locks import RegistryLock
from vdc.schemas import RegistryDocument, VdcRecord, VdcStatus

logger = logging.getLogger(__name__)


class RegistryStore:
    """Copy-on-write store of ``VdcRecord``s keyed by name.

    Usage:
        store = RegistryStore()

        with store.transaction() as doc:
            subnet = next_free_subnet(doc.used_subnets())
            doc.virtual_datacenters.append(VdcRecord(...))

        store.update_status("prod", VdcStatus.RUNNING)
    """

    def __init__(self, path: Path | None = None, lock_timeout: float | None = None):
        self.path = Path(path) if path else settings.registry_path
        self.lock = RegistryLock(
            self.path.with_name(self.path.name + ".lock"),
            timeout=settings.lock_acquire_timeout if lock_timeout is None else lock_timeout,
            poll_interval=settings.lock_poll_interval,
        )

    # --- Document I/O ---

    def _read(self) -> RegistryDocument:
        if not self.path.exists():
            return RegistryDocument()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Registry {self.path} is not valid JSON: {e}") from e
        return RegistryDocument.model_validate(data)

    def _write(self, doc: RegistryDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(doc.model_dump(mode="json"), indent=2) + "\n"
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @contextmanager
    def transaction(self) -> Iterator[RegistryDocument]:
        """Lock, read, yield the document, and write it back on clean exit.

        An exception inside the block discards every change made to the
        yielded document.
        """
        with self.lock.acquire():
            doc = self._read()
            yield doc
            self._write(doc)

    # --- Queries ---

    def list(self) -> list[VdcRecord]:
        with self.lock.acquire():
            return list(self._read().virtual_datacenters)

    def get(self, name: str) -> VdcRecord:
        """Return the record for ``name``.

        Raises:
            NotFoundError: If no such VDC is registered
        """
        with self.lock.acquire():
            record = self._read().find(name)
        if record is None:
            raise NotFoundError(name)
        return record

    def exists(self, name: str) -> bool:
        with self.lock.acquire():
            return self._read().find(name) is not None

    def used_subnets(self) -> list[str]:
        with self.lock.acquire():
            return self._read().used_subnets()

    # --- Mutations ---

    def insert(self, record: VdcRecord) -> VdcRecord:
        """Add a new record.

        Raises:
            AlreadyExists: If a record with the same name exists
        """
        with self.transaction() as doc:
            if doc.find(record.name) is not None:
                raise AlreadyExists(record.name)
            doc.virtual_datacenters.append(record)
        logger.info(f"Added VDC '{record.name}' to registry", extra={"vdc": record.name})
        return record

    def update(self, name: str, mutate: Callable[[VdcRecord], None]) -> VdcRecord:
        """Apply ``mutate`` to the stored record and persist the result."""
        with self.transaction() as doc:
            record = doc.find(name)
            if record is None:
                raise NotFoundError(name)
            mutate(record)
        return record

    def update_status(self, name: str, status: VdcStatus) -> VdcRecord:
        def _set(record: VdcRecord) -> None:
            record.status = status

        record = self.update(name, _set)
        logger.info(f"VDC '{name}' status -> {status.value}", extra={"vdc": name})
        return record

    def track(self, name: str, *, vm: str | None = None, switch: str | None = None,
              network: str | None = None) -> VdcRecord:
        """Append a provisioned resource to the record's tracked lists."""
        def _add(record: VdcRecord) -> None:
            for value, bucket in ((vm, record.vms), (switch, record.switches),
                                  (network, record.networks)):
                if value and value not in bucket:
                    bucket.append(value)

        return self.update(name, _add)

    def untrack(self, name: str, resource: str) -> VdcRecord:
        def _drop(record: VdcRecord) -> None:
            for bucket in (record.vms, record.switches, record.networks):
                if resource in bucket:
                    bucket.remove(resource)

        return self.update(name, _drop)

    def remove(self, name: str) -> None:
        """Delete a record.

        Raises:
            NotFoundError: If no such VDC is registered
        """
        with self.transaction() as doc:
            if doc.find(name) is None:
                raise NotFoundError(name)
            doc.virtual_datacenters = [
                r for r in doc.virtual_datacenters if r.name != name
            ]
        logger.info(f"Removed VDC '{name}' from registry", extra={"vdc": name})
