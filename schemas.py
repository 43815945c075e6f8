from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Dict, List

from pydantic import BaseModel, Field, model_validator

REDACTED_SENTINEL = "{MESSAGE HAS BEEN DELETED BY ADMIN}"
ANONYMOUS_NAME = "Anonymous"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    CODE = "code"
    FILE = "file"


# Ledger entry. Field names are the wire names clients already understand.
class MessageRecord(BaseModel):
    id: str = Field(..., description="Opaque unique id, never reused")
    name: str = Field(ANONYMOUS_NAME, description="Author display name at submit time")
    timestamp: datetime = Field(default_factory=now_utc)
    kind: MessageKind = MessageKind.CODE
    content: Optional[str] = Field(None, description="Code text (kind=code)")
    fileName: Optional[str] = Field(None, description="Stored blob name (kind=file)")
    url: Optional[str] = Field(None, description="Blob retrieval path (kind=file)")
    isDeleted: bool = False

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy(cls, data: Any) -> Any:
        # Older history files stored snippets as {"id", "name", "code", "isDeleted"}.
        if isinstance(data, dict) and "code" in data and "content" not in data:
            data = dict(data)
            data["content"] = data.pop("code")
        return data

    def redact(self, at: Optional[datetime] = None) -> None:
        self.content = REDACTED_SENTINEL
        self.kind = MessageKind.CODE
        self.fileName = None
        self.url = None
        self.isDeleted = True
        self.timestamp = at or now_utc()

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def dump_records(records: List[MessageRecord]) -> List[Dict[str, Any]]:
    return [r.to_wire() for r in records]


# -------------------- Inbound payloads --------------------

class JoinPayload(BaseModel):
    name: Optional[str] = None
    adminKey: Optional[str] = None


class SendMessagePayload(BaseModel):
    content: str


class SendFilePayload(BaseModel):
    fileName: str
    buffer: str = Field(..., description="Base64 encoded file bytes")


class EditMessagePayload(BaseModel):
    messageId: str
    newCode: str


class DeleteMessagePayload(BaseModel):
    messageId: str
