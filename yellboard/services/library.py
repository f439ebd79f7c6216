"""Library snapshots: scanning a group directory and the listing wire format."""
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..errors import SerializationError

logger = logging.getLogger(__name__)

# Fetches land in hidden temporaries before being renamed into place.
TEMP_PREFIX = ".incoming-"
DIR_MODE = 0o700


@dataclass(frozen=True)
class SoundEntry:
    """One clip file within a group. Equality is exact (case-sensitive)."""

    path: str


def _sort_key(entry: SoundEntry) -> tuple[str, str]:
    # Case-insensitive order; exact path breaks ties so equal sets serialize identically.
    return entry.path.casefold(), entry.path


@dataclass(frozen=True)
class LibrarySnapshot:
    """Immutable set of clips. Ordering only exists through :meth:`ordered`."""

    entries: frozenset = frozenset()

    @classmethod
    def of(cls, paths: Iterable[str]) -> "LibrarySnapshot":
        return cls(frozenset(SoundEntry(p) for p in paths))

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, item) -> bool:
        if isinstance(item, str):
            item = SoundEntry(item)
        return item in self.entries

    def __sub__(self, other: "LibrarySnapshot") -> "LibrarySnapshot":
        return LibrarySnapshot(self.entries - other.entries)

    @property
    def paths(self) -> frozenset:
        return frozenset(e.path for e in self.entries)

    def ordered(self) -> list[SoundEntry]:
        return sorted(self.entries, key=_sort_key)


def valid_name(name: str) -> bool:
    """Whether ``name`` can be listed, served and fetched as a clip of a group."""
    if not name or name in (".", "..") or name.startswith(TEMP_PREFIX):
        return False
    return not any(c in name for c in ("/", "\\", "\x00"))


def missing(local: LibrarySnapshot, remote: LibrarySnapshot) -> LibrarySnapshot:
    """Entries the remote announces that the local library lacks."""
    return remote - local


class LibraryIndex:
    """Scans ``storage_root/<group>`` and encodes/decodes listings."""

    def __init__(self, storage_root: Path):
        self.storage_root = Path(storage_root)

    def group_dir(self, group_id: str) -> Path:
        return self.storage_root / group_id

    def scan(self, group_id: str) -> LibrarySnapshot:
        """Enumerate regular files directly under the group directory.

        Never raises: a directory that cannot be created or read yields an
        empty snapshot.
        """
        directory = self.group_dir(group_id)
        try:
            directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            with os.scandir(directory) as it:
                names = [
                    entry.name
                    for entry in it
                    if entry.is_file() and valid_name(entry.name)
                ]
        except OSError as e:
            logger.warning("Could not scan %s: %s", directory, e)
            return LibrarySnapshot()
        return LibrarySnapshot.of(names)

    @staticmethod
    def serialize(snapshot: LibrarySnapshot) -> bytes:
        """Encode as a JSON array of ``{"path": ...}`` in case-insensitive order."""
        items = [{"path": e.path} for e in snapshot.ordered()]
        return json.dumps(items, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @staticmethod
    def deserialize(data: bytes) -> LibrarySnapshot:
        """Decode a listing; duplicate paths collapse into one entry."""
        try:
            items = json.loads(data)
        except (UnicodeDecodeError, ValueError, RecursionError) as e:
            raise SerializationError(f"listing is not valid JSON: {e}") from e
        # Peers with nothing to announce may send null.
        if items is None:
            return LibrarySnapshot()
        if not isinstance(items, list):
            raise SerializationError(f"listing must be an array, got {type(items).__name__}")
        paths = []
        for item in items:
            if not isinstance(item, dict):
                raise SerializationError(f"listing entry must be an object: {item!r}")
            path = item.get("path", item.get("Path"))
            if not isinstance(path, str) or not path:
                raise SerializationError(f"listing entry has no path: {item!r}")
            paths.append(path)
        return LibrarySnapshot.of(paths)

    @staticmethod
    def listing_frame(snapshot: LibrarySnapshot) -> str:
        """Realtime-client frame announcing the local listing."""
        return json.dumps({"sounds": [{"Path": e.path} for e in snapshot.ordered()]})

    def resolve(self, group_id: str, name: str) -> Path | None:
        """Path of ``name`` inside the group directory, or None if it is not a valid clip name.

        Symlinked clips are served like any other held file.
        """
        if not valid_name(name):
            return None
        return self.group_dir(group_id) / name

    def read(self, group_id: str, name: str) -> bytes | None:
        """Full contents of a held clip, or None when absent, unreadable or out of bounds."""
        path = self.resolve(group_id, name)
        if path is None:
            logger.warning("Refusing to read %r outside group %s", name, group_id)
            return None
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read %s: %s", path, e)
            return None

    def write(self, group_id: str, name: str, data: bytes) -> Path:
        """Write ``data`` as ``name`` atomically (temporary file + rename).

        Raises ValueError for names outside the group directory and OSError on
        filesystem failure.
        """
        path = self.resolve(group_id, name)
        if path is None:
            raise ValueError(f"refusing to write {name!r} outside group {group_id}")
        path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
        return path
