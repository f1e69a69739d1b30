"""
In-process hand-off for generated documents.

One request stores a rendered PDF and gets back an unguessable id; a
following request fetches it exactly once. Entries expire after
``PDF_TTL_SECONDS`` and nothing survives a restart.
"""
import logging
import secrets
import time
from dataclasses import dataclass

from .config import PDF_TTL_SECONDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PdfEntry:
    id: str
    buffer: bytes
    file_name: str
    expires_at: float


class BlobStore:
    def __init__(self, ttl_seconds: int = PDF_TTL_SECONDS, clock=time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, PdfEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        removed = 0
        for blob_id, entry in list(self._entries.items()):
            if entry.expires_at <= now and self._entries.pop(blob_id, None) is not None:
                removed += 1
        return removed

    def store(self, buffer: bytes, file_name: str) -> str:
        now = self.clock()
        swept = self.sweep(now)
        if swept:
            logger.debug("swept %d expired blobs", swept)
        blob_id = secrets.token_urlsafe(24)
        self._entries[blob_id] = PdfEntry(
            id=blob_id,
            buffer=bytes(buffer),
            file_name=file_name,
            expires_at=now + self.ttl_seconds,
        )
        return blob_id

    def get(self, blob_id: str) -> PdfEntry | None:
        # pop first: whoever pops owns the single read, even if it turns out expired.
        entry = self._entries.pop(blob_id, None)
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            return None
        return entry
