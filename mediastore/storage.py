import json
import re
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("mediastore.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


STORAGE_ROOT = _resolve_env_path("MEDIASTORE_STORAGE_ROOT", BASE_DIR)
CONTENT_DIR = _resolve_env_path("MEDIASTORE_CONTENT_DIR", STORAGE_ROOT / "content")
DATA_DIR = _resolve_env_path("MEDIASTORE_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("MEDIASTORE_LOGS_DIR", STORAGE_ROOT / "logs")
METADATA_PATH = DATA_DIR / "image-metadata.json"

CHUNK_SIZE_BYTES = 64 * 1024
DEFAULT_MAX_UPLOAD_BYTES = 10_000_000
MAX_UPLOAD_BYTES = _safe_int_env("MEDIASTORE_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)
DEFAULT_MAX_CONCURRENT_UPLOADS = _safe_int_env("MEDIASTORE_MAX_CONCURRENT_UPLOADS", 10)
DEFAULT_UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("MEDIASTORE_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DEFAULT_AUDIT_INTERVAL_MINUTES = _safe_int_env("MEDIASTORE_AUDIT_INTERVAL_MINUTES", 60)

TEMP_SUFFIX = ".tmp"
_ASSET_TEMP_PATTERN = re.compile(r"^\..+\.[0-9a-f]{32}\.tmp$")

logger = logging.getLogger("mediastore.storage")


def ensure_directories() -> None:
    CONTENT_DIR.mkdir(parents=True, exist_ok=True)
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


class InvalidFilenameError(ValueError):
    """Raised when a client-supplied name could escape the content root."""

    def __init__(self, name: Optional[str], reason: str) -> None:
        super().__init__(reason)
        self.name = name
        self.reason = reason


class SafeName(str):
    """A filename that passed :func:`sanitize_filename`.

    Only the sanitizer constructs instances; every path the storage layer
    builds goes through one of these.
    """

    __slots__ = ()


def sanitize_filename(name: Optional[str]) -> SafeName:
    """Validate *name* as a flat filename inside the content root.

    Rejection is all-or-nothing: the name is never rewritten.
    """

    if not name:
        raise InvalidFilenameError(name, "Filename cannot be empty")
    if "/" in name or "\\" in name:
        raise InvalidFilenameError(name, "Filename contains a path separator")
    if "\x00" in name:
        raise InvalidFilenameError(name, "Filename contains invalid characters")
    if name in {".", ".."}:
        raise InvalidFilenameError(name, "Filename refers to a directory")
    return SafeName(name)


class AssetNotFoundError(FileNotFoundError):
    """Raised when removing an asset that is not in the content directory."""


class AssetStore:
    """Raw asset bytes stored as flat files under a fixed content root."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: SafeName) -> Path:
        if not isinstance(name, SafeName):
            raise TypeError("asset paths require a sanitized name")
        return self.root / name

    def exists(self, name: SafeName) -> bool:
        return self.path_for(name).is_file()

    def write(self, name: SafeName, data: bytes) -> int:
        """Write *data* as *name*, replacing any existing asset.

        Returns the number of bytes written.
        """

        target = self.path_for(name)
        temp_path = self.root / f".{name}.{uuid.uuid4().hex}{TEMP_SUFFIX}"
        try:
            with temp_path.open("wb") as destination:
                destination.write(data)
                destination.flush()
                os.fsync(destination.fileno())
            written = temp_path.stat().st_size
            temp_path.replace(target)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise
        return written

    def remove(self, name: SafeName) -> None:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as error:
            raise AssetNotFoundError(str(path)) from error

    def list_names(self) -> Set[str]:
        """Return the names of stored assets, skipping in-flight temp files."""

        names = set()
        for entry in self.root.iterdir():
            if not entry.is_file():
                continue
            if _ASSET_TEMP_PATTERN.match(entry.name):
                continue
            names.add(entry.name)
        return names


@dataclass(frozen=True)
class AssetRecord:
    file: str
    size_bytes: int
    creation_date: str
    last_modified: str
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "file": self.file,
            "size_bytes": self.size_bytes,
        }
        if self.title is not None:
            payload["title"] = self.title
        payload["creation_date"] = self.creation_date
        payload["last_modified"] = self.last_modified
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "AssetRecord":
        title = raw.get("title")
        return cls(
            file=str(raw["file"]),
            size_bytes=int(raw["size_bytes"]),
            title=None if title is None else str(title),
            creation_date=str(raw["creation_date"]),
            last_modified=str(raw["last_modified"]),
        )


class JournalError(RuntimeError):
    """Raised when the metadata document cannot be read or rewritten."""


class MetadataJournal:
    """Ordered asset records persisted as one JSON document.

    Every mutation reads the whole document, changes it in memory and rewrites
    it. Mutations are serialized on the journal's lock so concurrent
    read-modify-write cycles cannot drop each other's updates.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Create an empty journal document if none exists yet."""

        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if not self.path.exists():
                self._write([])
                logger.info("journal_created path=%s", self.path)

    def load(self) -> List[AssetRecord]:
        try:
            with self.path.open("r", encoding="utf-8") as journal_file:
                raw = json.load(journal_file)
        except (OSError, ValueError) as error:
            raise JournalError(f"Unable to read metadata journal: {error}") from error

        if not isinstance(raw, list):
            raise JournalError("Metadata journal is not a JSON array")
        try:
            return [AssetRecord.from_dict(entry) for entry in raw]
        except (KeyError, TypeError, ValueError, AttributeError) as error:
            raise JournalError(f"Malformed metadata record: {error}") from error

    def append(self, record: AssetRecord) -> None:
        with self._lock:
            records = self.load()
            records.append(record)
            self._write(records)

    def remove_where(self, predicate: Callable[[AssetRecord], bool]) -> int:
        """Drop every record matching *predicate*; return how many were dropped."""

        with self._lock:
            records = self.load()
            remaining = [record for record in records if not predicate(record)]
            self._write(remaining)
            return len(records) - len(remaining)

    def _write(self, records: List[AssetRecord]) -> None:
        # Write to temporary file first for atomic update
        temp_path = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}")
        try:
            with temp_path.open("w", encoding="utf-8") as journal_file:
                json.dump([record.to_dict() for record in records], journal_file, indent=2)
                journal_file.flush()
                os.fsync(journal_file.fileno())
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as error:
            temp_path.unlink(missing_ok=True)
            raise JournalError(f"Unable to write metadata journal: {error}") from error


def init_storage(
    content_dir: Optional[Path] = None, metadata_path: Optional[Path] = None
) -> tuple[AssetStore, MetadataJournal]:
    """Create the content directory and journal document.

    Errors propagate; the service does not start without durable storage.
    """

    ensure_directories()
    store = AssetStore(content_dir or CONTENT_DIR)
    store.ensure_root()
    journal = MetadataJournal(metadata_path or METADATA_PATH)
    journal.initialize()
    return store, journal
