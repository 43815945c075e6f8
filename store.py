"""File-backed persistence for the message history.

The whole ordered history is rewritten as one indented JSON document on
every mutation. Writes happen on a background task so no mutation ever
waits on the disk; snapshots queued while a write is in flight are
coalesced and only the latest one is written.
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from errors import PersistenceFailure
from schemas import MessageRecord, dump_records

logger = logging.getLogger(__name__)

Payload = List[Dict[str, Any]]


class DurableLogStore:
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.writes = 0
        self.last_error: Optional[str] = None
        self._pending: Optional[Payload] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    # -------------------- Loading --------------------

    def load(self) -> List[MessageRecord]:
        if not self.path.exists():
            try:
                self.write([])
            except PersistenceFailure as exc:
                logger.error("Could not create history file %s: %s", self.path, exc)
            else:
                logger.info("Created new history file at %s", self.path)
            return []

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            self._warn_unreadable(str(exc))
            return []
        if not isinstance(raw, list):
            self._warn_unreadable(f"expected a JSON list, got {type(raw).__name__}")
            return []

        records = []
        for position, item in enumerate(raw):
            try:
                records.append(MessageRecord.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed history entry #%d: %s", position, exc.errors()[0].get("msg"))
        logger.info("Loaded %d messages from %s", len(records), self.path)
        return records

    def _warn_unreadable(self, reason: str) -> None:
        logger.error(
            "History file %s is unreadable (%s). STARTING WITH AN EMPTY HISTORY; "
            "the file will be overwritten on the next save.",
            self.path,
            reason,
        )

    # -------------------- Writing --------------------

    def write(self, records: List[MessageRecord]) -> None:
        """Synchronously persist ``records``. Raises PersistenceFailure."""
        self._write_payload(dump_records(records))

    def _write_payload(self, payload: Payload) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise PersistenceFailure(f"writing {self.path}: {exc}") from exc

    def save(self, snapshot: List[MessageRecord]) -> None:
        """Queue ``snapshot`` for writing and return immediately."""
        self._pending = dump_records(snapshot)
        self._ensure_worker()
        self._wakeup.set()

    # -------------------- Worker --------------------

    def _ensure_worker(self) -> None:
        if self._task is None or self._task.done():
            self._closing = False
            self._wakeup = asyncio.Event()
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def start(self) -> None:
        self._ensure_worker()

    async def _run(self) -> None:
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            payload, self._pending = self._pending, None
            if payload is not None:
                await self._flush(payload)
            if self._closing and self._pending is None:
                return

    async def _flush(self, payload: Payload) -> None:
        try:
            await asyncio.to_thread(self._write_payload, payload)
        except PersistenceFailure as exc:
            self.last_error = str(exc)
            logger.error("Error saving history: %s", exc)
        else:
            self.writes += 1
            self.last_error = None

    async def aclose(self) -> None:
        """Write whatever is still pending and stop the worker."""
        if self._task is None:
            return
        self._closing = True
        self._wakeup.set()
        await self._task
        self._task = None
