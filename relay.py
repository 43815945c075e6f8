"""Realtime core: connection fan-out and the broadcast router.

Every inbound event goes through ``BroadcastRouter.dispatch``. The router is
the only writer of the history ledger; all of its read-modify cycles run
under one asyncio lock so mutations never interleave and the snapshot sent
after a mutation is exactly the state that mutation produced.

Fan-out never waits on a recipient. Each connection has its own bounded
outbox drained by a dedicated writer task; a recipient whose outbox fills up
or whose socket fails is dropped. Clients resynchronise by reconnecting,
which always starts with a full ``loadHistory``.
"""
import asyncio
import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from blobs import BlobStore
from errors import InvalidState, PayloadTooLarge, RecordNotFound, RecordValidationError
from ledger import HistoryLedger
from schemas import (
    ANONYMOUS_NAME,
    DeleteMessagePayload,
    EditMessagePayload,
    JoinPayload,
    MessageKind,
    MessageRecord,
    SendFilePayload,
    SendMessagePayload,
    dump_records,
)
from sessions import SessionRegistry
from store import DurableLogStore

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class RelayPolicy:
    require_join_before_submit: bool = True
    presence_enabled: bool = True


# -------------------- Frames --------------------

def frame(event: str, **fields: Any) -> Dict[str, Any]:
    return {"type": event, **fields}


def load_history_frame(records: List[MessageRecord]) -> Dict[str, Any]:
    return frame("loadHistory", messages=dump_records(records))


def new_message_frame(record: MessageRecord) -> Dict[str, Any]:
    return frame("newMessage", **record.to_wire())


def error_frame(message: str) -> Dict[str, Any]:
    return frame("error", error=message)


# -------------------- Connections --------------------

class Connection:
    def __init__(self, connection_id: str, websocket: Any, outbox_size: int = 256,
                 remote: Optional[str] = None):
        self.id = connection_id
        self.websocket = websocket
        self.remote = remote
        self.state = ConnectionState.CONNECTED
        self.closed = False
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=outbox_size)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._drain())

    def send(self, message: Dict[str, Any]) -> bool:
        """Queue ``message`` without waiting. Returns False if it was dropped."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Connection %s is not keeping up, dropping it", self.id)
            self._mark_dead()
            return False
        return True

    async def _drain(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as exc:
                logger.info("Send to %s failed (%s), dropping connection", self.id, exc)
                self.closed = True
            finally:
                self._outbox.task_done()
            if self.closed:
                self._discard_pending()
                return

    def _discard_pending(self) -> None:
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()

    def _mark_dead(self) -> None:
        self.closed = True
        self._discard_pending()
        asyncio.get_running_loop().create_task(self._close_socket(1008))

    async def flush(self) -> None:
        """Wait until everything queued so far has been written."""
        await self._outbox.join()

    async def _close_socket(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as exc:
            logger.debug("Closing %s raised %s", self.id, exc)

    async def close(self) -> None:
        self.closed = True
        self._discard_pending()
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass


class ConnectionManager:
    def __init__(self):
        self.connections: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self.connections)

    def add(self, connection: Connection) -> None:
        self.connections[connection.id] = connection
        connection.start()

    def remove(self, connection_id: str) -> Optional[Connection]:
        return self.connections.pop(connection_id, None)

    def broadcast(self, message: Dict[str, Any], exclude: Optional[str] = None) -> int:
        delivered = 0
        dead = []
        for connection in list(self.connections.values()):
            if connection.id == exclude:
                continue
            if connection.send(message):
                delivered += 1
            elif connection.closed:
                dead.append(connection.id)
        for connection_id in dead:
            self.connections.pop(connection_id, None)
        return delivered


# -------------------- Router --------------------

Handler = Callable[[Connection, Dict[str, Any]], Awaitable[Any]]


class BroadcastRouter:
    def __init__(self, ledger: HistoryLedger, sessions: SessionRegistry, store: DurableLogStore,
                 blobs: BlobStore, manager: Optional[ConnectionManager] = None,
                 policy: Optional[RelayPolicy] = None):
        self.ledger = ledger
        self.sessions = sessions
        self.store = store
        self.blobs = blobs
        self.manager = manager if manager is not None else ConnectionManager()
        self.policy = policy or RelayPolicy()
        self._lock = asyncio.Lock()
        self._handlers: Dict[str, Handler] = {
            "join": self._handle_join,
            "sendMessage": self._handle_send_message,
            "sendCode": self._handle_send_code,
            "sendFile": self._handle_send_file,
            "editMessage": self._handle_edit,
            "deleteMessage": self._handle_delete,
        }

    def _name(self, connection: Connection) -> str:
        session = self.sessions.get(connection.id)
        return session.display_name if session else connection.id

    # -------------------- Lifecycle --------------------

    async def on_connect(self, connection: Connection) -> None:
        # Registering and snapshotting under the lock keeps every later
        # newMessage strictly after this connection's loadHistory.
        async with self._lock:
            self.manager.add(connection)
            connection.send(load_history_frame(self.ledger.snapshot()))
        logger.info("Device connected: %s (%s)", connection.id, connection.remote or "unknown")

    async def on_join(self, connection: Connection, name: Optional[str], admin_key: Optional[str]) -> bool:
        if connection.state is not ConnectionState.CONNECTED:
            logger.warning("Ignoring repeated join from %s", self._name(connection))
            return False
        display_name = name.strip() if isinstance(name, str) and name.strip() else ANONYMOUS_NAME
        privileged = self.sessions.register(connection.id, display_name, admin_key)
        connection.state = ConnectionState.JOINED
        logger.info("%s joined as %s", display_name, "ADMIN" if privileged else "User")

        if privileged:
            connection.send(frame("adminStatus", isAdmin=True))
        if self.policy.presence_enabled:
            self.manager.broadcast(frame("userJoined", message=f"{display_name} joined the room."),
                                   exclude=connection.id)
            self.manager.broadcast(frame("updateUserList", users=self.sessions.active_names()))
        return privileged

    async def on_disconnect(self, connection: Connection) -> None:
        connection.state = ConnectionState.DISCONNECTED
        self.manager.remove(connection.id)
        await connection.close()
        name = self.sessions.unregister(connection.id)
        logger.info("Device disconnected: %s", connection.id)
        if name is not None and self.policy.presence_enabled:
            self.manager.broadcast(frame("userLeft", message=f"{name} left the room."))
            self.manager.broadcast(frame("updateUserList", users=self.sessions.active_names()))

    # -------------------- Submissions --------------------

    def _author(self, connection: Connection) -> Optional[str]:
        session = self.sessions.get(connection.id)
        if session is not None:
            return session.display_name
        if self.policy.require_join_before_submit:
            return None
        return ANONYMOUS_NAME

    async def _publish(self, record: MessageRecord) -> Optional[MessageRecord]:
        async with self._lock:
            try:
                self.ledger.append(record)
            except RecordValidationError as exc:
                logger.error("Dropping message %s: %s", record.id, exc)
                return None
            self.store.save(self.ledger.snapshot())
            self.manager.broadcast(new_message_frame(record))
        return record

    async def on_submit_code(self, connection: Connection, content: str) -> Optional[MessageRecord]:
        author = self._author(connection)
        if author is None:
            connection.send(error_frame("join the room before sending messages"))
            return None
        record = MessageRecord(id=uuid.uuid4().hex, name=author, kind=MessageKind.CODE, content=content)
        return await self._publish(record)

    async def on_submit_file(self, connection: Connection, file_name: str, data: bytes) -> Optional[MessageRecord]:
        author = self._author(connection)
        if author is None:
            connection.send(error_frame("join the room before sending files"))
            return None
        try:
            stored = await self.blobs.store(file_name, data)
        except PayloadTooLarge as exc:
            logger.warning("Rejected upload %r from %s: %s", file_name, author, exc)
            connection.send(error_frame(str(exc)))
            return None
        except RecordValidationError as exc:
            logger.warning("Rejected upload from %s: %s", author, exc)
            connection.send(error_frame(str(exc)))
            return None
        except OSError as exc:
            logger.error("Could not store upload %r: %s", file_name, exc)
            connection.send(error_frame("could not store file"))
            return None

        record = MessageRecord(
            id=uuid.uuid4().hex,
            name=author,
            kind=MessageKind.FILE,
            fileName=stored.file_name,
            url=stored.url,
        )
        return await self._publish(record)

    # -------------------- Moderation --------------------

    async def on_edit_request(self, connection: Connection, message_id: str, new_content: str) -> bool:
        if not self.sessions.is_privileged(connection.id):
            logger.warning("User %s tried to edit (no admin)", self._name(connection))
            return False
        async with self._lock:
            try:
                self.ledger.edit_content(message_id, new_content)
            except (RecordNotFound, InvalidState) as exc:
                logger.info("Ignoring edit from %s: %s", self._name(connection), exc)
                return False
            self._resync()
        logger.info("Admin %s edited message %s", self._name(connection), message_id)
        return True

    async def on_delete_request(self, connection: Connection, message_id: str) -> bool:
        if not self.sessions.is_privileged(connection.id):
            logger.warning("User %s tried to delete (no admin)", self._name(connection))
            return False
        async with self._lock:
            try:
                changed = self.ledger.redact(message_id)
            except RecordNotFound as exc:
                logger.info("Ignoring delete from %s: %s", self._name(connection), exc)
                return False
            if not changed:
                return False
            self._resync()
        logger.info("Admin %s deleted message %s", self._name(connection), message_id)
        return True

    def _resync(self) -> None:
        # Caller holds the lock.
        snapshot = self.ledger.snapshot()
        self.store.save(snapshot)
        self.manager.broadcast(load_history_frame(snapshot))

    # -------------------- Dispatch --------------------

    async def dispatch(self, connection: Connection, data: Any) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            connection.send(error_frame("expected an object with a string 'type'"))
            return
        event = data["type"]
        handler = self._handlers.get(event)
        if handler is None:
            connection.send(error_frame(f"unknown event {event}"))
            return
        await handler(connection, data)

    @staticmethod
    def _parse(model: type, connection: Connection, data: Dict[str, Any]) -> Optional[BaseModel]:
        try:
            return model.model_validate(data)
        except ValidationError:
            connection.send(error_frame(f"invalid payload for {data['type']}"))
            return None

    async def _handle_join(self, connection: Connection, data: Dict[str, Any]) -> None:
        payload = self._parse(JoinPayload, connection, data)
        if payload is not None:
            await self.on_join(connection, payload.name, payload.adminKey)

    async def _handle_send_message(self, connection: Connection, data: Dict[str, Any]) -> None:
        payload = self._parse(SendMessagePayload, connection, data)
        if payload is not None:
            await self.on_submit_code(connection, payload.content)

    async def _handle_send_code(self, connection: Connection, data: Dict[str, Any]) -> None:
        # Older clients send {"type": "sendCode", "code": ...}.
        await self._handle_send_message(connection, {"type": data["type"], "content": data.get("code")})

    async def _handle_send_file(self, connection: Connection, data: Dict[str, Any]) -> None:
        payload = self._parse(SendFilePayload, connection, data)
        if payload is None:
            return
        encoded = payload.buffer
        if encoded.startswith("data:") and "," in encoded:
            encoded = encoded.split(",", 1)[1]
        try:
            self.blobs.check_size(decoded_size(encoded))
            content = base64.b64decode(encoded, validate=True)
        except PayloadTooLarge as exc:
            logger.warning("Rejected upload %r from %s: %s", payload.fileName, self._name(connection), exc)
            connection.send(error_frame(str(exc)))
            return
        except (binascii.Error, ValueError):
            connection.send(error_frame("buffer is not valid base64"))
            return
        await self.on_submit_file(connection, payload.fileName, content)

    async def _handle_edit(self, connection: Connection, data: Dict[str, Any]) -> None:
        payload = self._parse(EditMessagePayload, connection, data)
        if payload is not None:
            await self.on_edit_request(connection, payload.messageId, payload.newCode)

    async def _handle_delete(self, connection: Connection, data: Dict[str, Any]) -> None:
        payload = self._parse(DeleteMessagePayload, connection, data)
        if payload is not None:
            await self.on_delete_request(connection, payload.messageId)


def decoded_size(encoded: str) -> int:
    """Byte length of a base64 string once decoded, without decoding it."""
    stripped = encoded.rstrip("=")
    return len(stripped) * 3 // 4
