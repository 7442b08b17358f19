"""File-based content-addressable blob store with a JSON metadata index.

Layout under the data directory::

    artifacts/blobs/sha256/aa/bb/<full sha256>
    artifacts/index.json
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path


def sha256_hex(data: bytes) -> str:
    """Return the lower-case hex SHA-256 digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def _now_unix() -> int:
    return int(time.time())


@dataclass
class IndexEntry:
    """Metadata kept for one stored blob."""

    size_bytes: int = 0
    last_accessed_unix: int = 0
    pinned: bool = False

    @classmethod
    def from_json(cls, raw: dict) -> "IndexEntry":
        return cls(
            size_bytes=int(raw["size_bytes"]),
            last_accessed_unix=int(raw["last_accessed_unix"]),
            pinned=bool(raw.get("pinned", False)),
        )


class ContentStore:
    """Blobs addressed by their SHA-256 digest, with LRU garbage collection."""

    def __init__(self, data_dir) -> None:
        data = Path(data_dir)
        self.base_dir = data / "artifacts" / "blobs" / "sha256"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.index_path = data / "artifacts" / "index.json"

    def _path_for_digest(self, digest: str) -> Path:
        if len(digest) < 4:
            raise ValueError(f"digest too short: {digest!r}")
        return self.base_dir / digest[0:2] / digest[2:4] / digest

    def _load_index(self) -> dict[str, IndexEntry]:
        try:
            raw = json.loads(self.index_path.read_bytes())
            return {
                digest: IndexEntry.from_json(entry)
                for digest, entry in raw["entries"].items()
            }
        except (OSError, ValueError, KeyError, TypeError, AttributeError):
            return {}

    def _save_index(self, entries: dict[str, IndexEntry]) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "entries": {digest: asdict(entries[digest]) for digest in sorted(entries)}
        }
        self.index_path.write_text(json.dumps(payload, indent=2))

    def has(self, digest: str) -> bool:
        """Whether a blob with this digest is present on disk."""
        return self._path_for_digest(digest).exists()

    def put_bytes(self, data: bytes) -> str:
        """Store ``data`` (if not already present) and return its digest."""
        digest = sha256_hex(data)
        path = self._path_for_digest(digest)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        entries = self._load_index()
        entry = entries.setdefault(digest, IndexEntry())
        entry.size_bytes = len(data)
        entry.last_accessed_unix = _now_unix()
        self._save_index(entries)
        return digest

    def get_path(self, digest: str) -> Path | None:
        """Return the blob path, refreshing its access time, or None if absent."""
        path = self._path_for_digest(digest)
        if not path.exists():
            return None
        entries = self._load_index()
        entry = entries.get(digest)
        if entry is not None:
            entry.last_accessed_unix = _now_unix()
            try:
                self._save_index(entries)
            except OSError:
                pass
        return path

    def list(self) -> list[tuple[str, IndexEntry]]:
        """All indexed blobs as (digest, entry), ordered by digest."""
        entries = self._load_index()
        return sorted(entries.items())

    def pin(self, digest: str, value: bool) -> None:
        """Set the pinned flag of an indexed blob."""
        entries = self._load_index()
        entry = entries.get(digest)
        if entry is None:
            raise KeyError("digest not found")
        entry.pinned = value
        self._save_index(entries)

    def total_size_bytes(self) -> int:
        """Sum of the sizes recorded in the index."""
        return sum(entry.size_bytes for entry in self._load_index().values())

    def gc_to_target(self, target_total_bytes: int) -> None:
        """Evict least recently used unpinned blobs until the total fits the target."""
        entries = self._load_index()
        items = sorted(entries.items(), key=lambda item: item[1].last_accessed_unix)
        current = sum(entry.size_bytes for _, entry in items)
        for digest, entry in items:
            if current <= target_total_bytes:
                break
            if entry.pinned:
                continue
            try:
                self._path_for_digest(digest).unlink()
            except OSError:
                pass
            current = max(0, current - entry.size_bytes)
            del entries[digest]
        self._save_index(entries)