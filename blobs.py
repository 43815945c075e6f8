import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Union
from urllib.parse import quote

from errors import PayloadTooLarge, RecordValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024


def sanitize_filename(file_name: str) -> str:
    """Reduce a client supplied name to its final path component.

    Both separators are honoured so ``..\\..\\x`` and ``../../x`` end up as ``x``.
    """
    if not isinstance(file_name, str):
        raise RecordValidationError("fileName must be a string")
    cleaned = file_name.replace("\x00", "").replace("\\", "/").strip()
    base = PurePosixPath(cleaned).name.strip()
    if base in ("", ".", ".."):
        raise RecordValidationError(f"unusable file name {file_name!r}")
    return base


@dataclass(frozen=True)
class StoredBlob:
    file_name: str
    url: str
    path: Path


class BlobStore:
    def __init__(self, directory: Union[str, Path], url_prefix: str = "/uploads",
                 max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        self.directory = Path(directory)
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes

    def check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise PayloadTooLarge(size, self.max_bytes)

    def resolve(self, file_name: str) -> Path:
        root = self.directory.resolve()
        target = (root / sanitize_filename(file_name)).resolve()
        if target.parent != root:
            raise RecordValidationError(f"file name {file_name!r} escapes the upload directory")
        return target

    def _unique_path(self, file_name: str) -> Path:
        target = self.resolve(file_name)
        stem, suffix = target.stem, target.suffix
        counter = 1
        while target.exists():
            target = target.with_name(f"{stem}-{counter}{suffix}")
            counter += 1
        return target

    def _write(self, file_name: str, data: bytes) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._unique_path(file_name)
        # "xb": an existing blob is never overwritten
        with open(target, "xb") as fh:
            fh.write(data)
        return target

    async def store(self, file_name: str, data: bytes) -> StoredBlob:
        self.check_size(len(data))
        while True:
            try:
                path = await asyncio.to_thread(self._write, file_name, data)
                break
            except FileExistsError:
                continue
        logger.info("Stored upload %s (%d bytes)", path.name, len(data))
        return StoredBlob(file_name=path.name, url=f"{self.url_prefix}/{quote(path.name)}", path=path)
