"""Local invoice repository: every NF-e record the lifecycle has touched.

Records live in a JSON file under the data directory (one file per
environment when used from the CLI). Read-modify-write cycles hold a file
lock so concurrent CLI runs never lose each other's updates.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from filelock import FileLock

from emissor_nfe import config as _config
from emissor_nfe.models.record import InvoiceRecord, InvoiceStatus
from emissor_nfe.services.exceptions import ValidationError

logger = logging.getLogger(__name__)


class InvoiceRepository(Protocol):
    def create(self, record: InvoiceRecord) -> InvoiceRecord: ...

    def update(self, record: InvoiceRecord) -> InvoiceRecord: ...

    def get(self, record_id: str) -> InvoiceRecord | None: ...

    def list(self, status: InvoiceStatus | None = None) -> list[InvoiceRecord]: ...


def registry_path(env: str = "homologacao") -> Path:
    return _config.get_data_dir() / env / "invoices.json"


def _backup_corrupt(path: Path) -> Path:
    """Rename a corrupt file to a timestamped backup before it gets overwritten."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    backup = path.with_name(f"{path.name}.corrupt.{ts}")
    path.rename(backup)
    logger.warning("Corrupt file backed up: %s -> %s", path, backup)
    return backup


class JsonInvoiceRepository:
    """File-backed repository; the file holds a JSON list of record dicts."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path if path is not None else registry_path()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold an exclusive file lock during registry read-modify-write."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.path.with_suffix(".lock")):
            yield

    def _load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            return json.loads(self.path.read_text())
        except (json.JSONDecodeError, ValueError):
            _backup_corrupt(self.path)
            return []

    def _save(self, entries: list[dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(entries, indent=2, ensure_ascii=False, default=str) + "\n")
        os.replace(tmp, self.path)

    def create(self, record: InvoiceRecord) -> InvoiceRecord:
        with self._locked():
            entries = self._load()
            if any(e.get("id") == record.id for e in entries):
                raise ValidationError(f"NF-e ja registrada: {record.id}")
            entries.append(record.to_dict())
            self._save(entries)
        return record

    def update(self, record: InvoiceRecord) -> InvoiceRecord:
        with self._locked():
            entries = self._load()
            for i, entry in enumerate(entries):
                if entry.get("id") == record.id:
                    entries[i] = record.to_dict()
                    self._save(entries)
                    return record
        raise ValidationError(f"NF-e nao encontrada: {record.id}")

    def get(self, record_id: str) -> InvoiceRecord | None:
        with self._locked():
            entries = self._load()
        for entry in entries:
            if entry.get("id") == record_id:
                return InvoiceRecord.from_dict(entry)
        return None

    def find_by_chave(self, chave: str) -> InvoiceRecord | None:
        with self._locked():
            entries = self._load()
        for entry in entries:
            if entry.get("chave") == chave:
                return InvoiceRecord.from_dict(entry)
        return None

    def list(self, status: InvoiceStatus | None = None) -> list[InvoiceRecord]:
        with self._locked():
            entries = self._load()
        records = [InvoiceRecord.from_dict(e) for e in entries]
        if status is not None:
            records = [r for r in records if r.status is status]
        return records


class MemoryInvoiceRepository:
    """In-process repository, insertion ordered."""

    def __init__(self) -> None:
        self._records: dict[str, InvoiceRecord] = {}
        self._lock = threading.Lock()

    def create(self, record: InvoiceRecord) -> InvoiceRecord:
        with self._lock:
            if record.id in self._records:
                raise ValidationError(f"NF-e ja registrada: {record.id}")
            self._records[record.id] = record
        return record

    def update(self, record: InvoiceRecord) -> InvoiceRecord:
        with self._lock:
            if record.id not in self._records:
                raise ValidationError(f"NF-e nao encontrada: {record.id}")
            self._records[record.id] = record
        return record

    def get(self, record_id: str) -> InvoiceRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def find_by_chave(self, chave: str) -> InvoiceRecord | None:
        with self._lock:
            return next((r for r in self._records.values() if r.chave == chave), None)

    def list(self, status: InvoiceStatus | None = None) -> list[InvoiceRecord]:
        with self._lock:
            records = list(self._records.values())
        if status is not None:
            records = [r for r in records if r.status is status]
        return records
