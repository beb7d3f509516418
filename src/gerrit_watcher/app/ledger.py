"""Durable run history backed by a single JSON file.

Beginner terms used in this file:
- Ledger: the ordered list of every run the watcher has started.
- Atomic write: write to a temp file, then rename it over the target, so a
  crash never leaves a half-written ledger behind.
- Writer thread: persistence is queued onto one background thread, so
  callers never wait for disk I/O and writes land in submission order.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .errors import DuplicateRunError, InvalidTransitionError, LedgerError
from .models import TERMINAL_STATUSES, RunRecord, RunStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as f:
        json.dump(data, f, indent=2)
        f.write("\n")
        tmp_name = f.name
    os.replace(tmp_name, path)


def _upgrade_legacy_entry(entry: dict[str, Any]) -> dict[str, Any]:
    """Fill identifiers missing from ledgers written before runs had ids."""
    upgraded = dict(entry)
    container_name = upgraded.get("containerName")
    if isinstance(container_name, str) and container_name:
        upgraded.setdefault("runId", container_name)
        upgraded.setdefault("logPath", container_name)
    return upgraded


class RunLedger:
    """Thread-safe, single-owner store of RunRecord entries."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.path = Path(path)
        self._clock = clock
        # Lock guards the in-memory list; disk writes happen on the writer thread.
        self._lock = threading.Lock()
        self._records: list[RunRecord] = []
        self._index: dict[str, int] = {}
        self._loaded = False
        self._closed = False
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-writer")

    def load(self) -> None:
        """Read persisted runs once; runs left `running` by a restart become `aborted`."""
        with self._lock:
            if self._loaded:
                return
            entries = self._read_persisted()
            self._loaded = True
            records: list[RunRecord] = []
            index: dict[str, int] = {}
            for entry in entries:
                if entry.run_id in index:
                    logger.warning("ledger event=duplicate_entry run_id=%s", entry.run_id)
                    continue
                if entry.status == "running":
                    logger.info("ledger event=aborted_on_load run_id=%s", entry.run_id)
                    entry = entry.model_copy(update={"status": "aborted"})
                index[entry.run_id] = len(records)
                records.append(entry)
            # Runs appended before load() stay, after the persisted history.
            for existing in self._records:
                if existing.run_id not in index:
                    index[existing.run_id] = len(records)
                    records.append(existing)
            self._records = records
            self._index = index
            payload = self._payload_locked()
            self._schedule_persist(payload)
        logger.info("ledger event=loaded path=%s runs=%d", self.path, len(payload))

    def append(self, record: RunRecord) -> RunRecord:
        """Add a new run; it always enters the ledger as `running`."""
        fresh = record.model_copy(update={"status": "running", "finished_at": None, "exit_code": None})
        with self._lock:
            if fresh.run_id in self._index:
                raise DuplicateRunError(fresh.run_id)
            self._index[fresh.run_id] = len(self._records)
            self._records.append(fresh)
            self._schedule_persist(self._payload_locked())
        return fresh

    def update_status(
        self,
        run_id: str,
        status: RunStatus,
        *,
        exit_code: int | None = None,
    ) -> RunRecord:
        """Move a `running` run to a terminal status. Allowed once per run."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status!r} is not a terminal run status")
        with self._lock:
            position = self._index.get(run_id)
            if position is None:
                raise KeyError(f"Run {run_id} does not exist")
            current = self._records[position]
            if current.status != "running":
                raise InvalidTransitionError(run_id, current.status, status)
            updated = current.model_copy(
                update={"status": status, "exit_code": exit_code, "finished_at": self._clock()}
            )
            self._records[position] = updated
            self._schedule_persist(self._payload_locked())
        return updated

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            position = self._index.get(run_id)
            return self._records[position] if position is not None else None

    def find_running(self, container_name: str) -> RunRecord | None:
        with self._lock:
            for record in reversed(self._records):
                if record.container_name == container_name and record.status == "running":
                    return record
        return None

    def snapshot(self, *, newest_first: bool = True) -> tuple[RunRecord, ...]:
        """Immutable copy of the ledger for readers such as the status page."""
        with self._lock:
            records = tuple(self._records)
        return tuple(reversed(records)) if newest_first else records

    def flush(self) -> None:
        """Block until every queued write has finished."""
        with self._lock:
            if self._closed:
                return
            marker = self._writer.submit(lambda: None)
        marker.result()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            # The writer never takes the lock, so draining it here cannot deadlock.
            self._writer.shutdown(wait=True)

    def _payload_locked(self) -> list[dict[str, Any]]:
        return [record.to_json() for record in self._records]

    def _schedule_persist(self, payload: list[dict[str, Any]]) -> None:
        # Called with the lock held, so writes queue in mutation order.
        if self._closed:
            # Shutdown already drained the writer; persist inline instead.
            self._persist(payload)
            return
        self._writer.submit(self._persist, payload)

    def _persist(self, payload: list[dict[str, Any]]) -> None:
        try:
            write_json_atomic(self.path, payload)
        except OSError as exc:
            # In-memory state stays authoritative; the next restart may see stale history.
            logger.error(
                "ledger event=persist_failed path=%s runs=%d reason=%s",
                self.path,
                len(payload),
                exc,
            )

    def _read_persisted(self) -> list[RunRecord]:
        if not self.path.exists():
            return []
        self._backup()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("ledger event=unreadable path=%s reason=%s", self.path, exc)
            return []
        if not isinstance(raw, list):
            logger.error("ledger event=unreadable path=%s reason=expected a JSON array", self.path)
            return []

        records: list[RunRecord] = []
        for position, entry in enumerate(raw):
            if not isinstance(entry, dict):
                logger.warning("ledger event=skip_entry position=%d reason=not an object", position)
                continue
            try:
                records.append(RunRecord.model_validate(_upgrade_legacy_entry(entry)))
            except ValidationError as exc:
                logger.warning(
                    "ledger event=skip_entry position=%d reason=%s",
                    position,
                    exc.errors()[0]["msg"],
                )
        return records

    def _backup(self) -> Path:
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        backup_path = self.path.with_name(f"{self.path.name}.{stamp}.bak")
        try:
            shutil.copy2(self.path, backup_path)
        except OSError as exc:
            raise LedgerError(f"Could not back up {self.path} to {backup_path}: {exc}") from exc
        logger.info("ledger event=backup path=%s", backup_path)
        return backup_path
