"""In-memory message history.

The ledger is the single source of truth for what clients see. It only
grows, except through the two moderation paths (edit and redact), which
mutate a record in place and keep its position and id.
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional

from errors import InvalidState, RecordNotFound, RecordValidationError
from schemas import MessageKind, MessageRecord, now_utc

logger = logging.getLogger(__name__)


class HistoryLedger:
    def __init__(self, records: Optional[Iterable[MessageRecord]] = None):
        self._lock = threading.RLock()
        self._records: List[MessageRecord] = []
        self._index: Dict[str, MessageRecord] = {}
        for record in records or ():
            try:
                self.append(record)
            except RecordValidationError as exc:
                logger.warning("Dropping record while loading history: %s", exc)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, record: MessageRecord) -> None:
        with self._lock:
            if record.id in self._index:
                raise RecordValidationError(f"duplicate message id {record.id!r}")
            stored = record.model_copy(deep=True)
            self._records.append(stored)
            self._index[stored.id] = stored

    def find_by_id(self, message_id: str) -> MessageRecord:
        with self._lock:
            return self._get(message_id).model_copy(deep=True)

    def redact(self, message_id: str) -> bool:
        """Redact a record in place.

        Returns False when the record was already redacted, in which case
        nothing changes.
        """
        with self._lock:
            record = self._get(message_id)
            if record.isDeleted:
                return False
            record.redact(now_utc())
            return True

    def edit_content(self, message_id: str, new_content: str) -> MessageRecord:
        with self._lock:
            record = self._get(message_id)
            if record.isDeleted:
                raise InvalidState(f"message {message_id!r} is redacted")
            if record.kind is MessageKind.FILE:
                raise InvalidState(f"message {message_id!r} is a file and cannot be edited")
            record.content = new_content
            record.timestamp = now_utc()
            return record.model_copy(deep=True)

    def snapshot(self) -> List[MessageRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records]

    def _get(self, message_id: str) -> MessageRecord:
        try:
            return self._index[message_id]
        except KeyError:
            raise RecordNotFound(message_id) from None
