"""Response cache: content-addressed by (model, full ordered message list)."""

import base64
import hashlib
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from .config import default_cache_path
from .types import CacheEntry, Message, Response

log = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def compute_cache_key(model: str, messages: List[Message]) -> str:
    """Compute a deterministic key: SHA-256 over canonical JSON of model and messages."""
    canonical = json.dumps(
        {"model": model, "messages": messages},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def make_entry(response: Response, now: Optional[float] = None) -> CacheEntry:
    """Build a cache entry; the provider's raw payload is not stored."""
    stored = {k: v for k, v in response.items() if k != "raw"}
    return {"response": stored, "obtained_at": time.time() if now is None else now}


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[CacheEntry]: ...

    def put(self, key: str, entry: CacheEntry) -> None: ...


class MemoryCacheStore:
    """In-process store."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileCacheStore:
    """
    Store persisted as one JSON object in a file.

    The file is read lazily on first access and rewritten on every put.
    A file that is not valid JSON is treated as empty and replaced on the next put.
    There is no locking: concurrent writers of the same key race and the last
    write wins, which is harmless because equal keys mean equal requests.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path) if path else default_cache_path()
        self._entries: Optional[Dict[str, CacheEntry]] = None

    def _load(self) -> Dict[str, CacheEntry]:
        if self._entries is None:
            if self.path.exists():
                try:
                    with open(self.path, "r", encoding="utf-8") as f:
                        self._entries = json.load(f)
                except ValueError as e:
                    log.warning("Ignoring unreadable cache file %s: %s", self.path, e)
                    self._entries = {}
            else:
                self._entries = {}
        return self._entries

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._load().get(key)

    def put(self, key: str, entry: CacheEntry) -> None:
        entries = {**self._load(), key: entry}
        data = json.dumps(entries, default=_json_default)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise
        self._entries = entries
