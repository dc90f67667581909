"""On-disk record store for syncfeed.

Each record lives in its own JSON unit inside one data directory, so a file-sync
tool that overwrites one unit never touches another, and concurrent edits to
different records never collide at the file level. Writes are atomic renames;
reads tolerate half-written or corrupted units by skipping them.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import IO

from syncfeed.models import Feed, Item, Record, RecordKey, RecordKind, Tombstone

logger = logging.getLogger(__name__)

FORMAT_NAME = "syncfeed.record"
FORMAT_VERSION = 1

UNIT_SUFFIX = ".json"
TOMBSTONE_SUFFIX = ".tombstone.json"
SCRATCH_PREFIX = "."
SCRATCH_SUFFIX = ".tmp"

_UNIT_NAME = re.compile(r"^(feed|item)-([0-9a-f]{24})(\.tombstone)?\.json$")


class RecordFormatError(Exception):
    """Raised when a unit's content is not a valid, intact record."""


class Store:
    """Directory of independently writable record units."""

    def __init__(self, data_dir: str | os.PathLike):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    # --- Naming ---

    def unit_path(self, key: RecordKey, tombstone: bool = False) -> Path:
        suffix = TOMBSTONE_SUFFIX if tombstone else UNIT_SUFFIX
        return self.data_dir / f"{key.kind.value}-{key.identity}{suffix}"

    def path_for(self, record: Record) -> Path:
        return self.unit_path(record.key, tombstone=isinstance(record, Tombstone))

    @staticmethod
    def key_for_path(path: str | os.PathLike) -> RecordKey | None:
        """Map a unit file name back to its record key, or None for foreign files."""
        match = _UNIT_NAME.match(Path(path).name)
        if not match:
            return None
        return RecordKey(RecordKind(match.group(1)), match.group(2))

    @staticmethod
    def is_scratch(path: str | os.PathLike) -> bool:
        name = Path(path).name
        return name.startswith(SCRATCH_PREFIX) or name.endswith(SCRATCH_SUFFIX)

    @staticmethod
    def is_unit(path: str | os.PathLike) -> bool:
        return not Store.is_scratch(path) and Path(path).name.endswith(UNIT_SUFFIX)

    # --- Reading ---

    def load_path(self, path: str | os.PathLike) -> Record:
        """Read and verify a single unit.

        Raises:
            OSError: If the unit cannot be read.
            RecordFormatError: If the content is truncated, corrupted or of an unknown format.
        """
        return decode_record(Path(path).read_bytes())

    def load(self, key: RecordKey) -> list[Record]:
        """Return the healthy units stored for ``key``: its live record and/or tombstone."""
        records = []
        for path in (self.unit_path(key), self.unit_path(key, tombstone=True)):
            record = self._try_load(path)
            if record is None:
                continue
            if record.key != key:
                logger.warning("Unit %s holds %s, ignoring it", path.name, record.key)
                continue
            records.append(record)
        return records

    def load_all(self) -> list[Record]:
        """Scan the data directory and return every healthy record.

        Units that fail to parse or verify are skipped and logged; the scan never
        aborts because of one bad unit. Several units may hold copies of the
        same record (e.g. a sync tool's conflicted copy).
        """
        records = []
        try:
            entries = sorted(self.data_dir.iterdir())
        except FileNotFoundError:
            logger.warning("Data directory %s is missing", self.data_dir)
            return records
        for path in entries:
            if not self.is_unit(path) or not path.is_file():
                continue
            record = self._try_load(path)
            if record is not None:
                records.append(record)
        return records

    def _try_load(self, path: Path) -> Record | None:
        try:
            return self.load_path(path)
        except FileNotFoundError:
            return None
        except RecordFormatError as e:
            logger.warning("Skipping damaged unit %s: %s", path.name, e)
        except OSError as e:
            logger.warning("Skipping unreadable unit %s: %s", path.name, e)
        return None

    # --- Writing ---

    def save(self, record: Record) -> Path:
        """Atomically write a record to its unit.

        Raises:
            OSError: If the storage medium refuses the write (e.g. disk full).
        """
        path = self.path_for(record)
        data = encode_record(record)
        with _atomic_writer(path) as fh:
            fh.write(data)
        logger.debug("Saved %s", path.name)
        return path

    def delete(self, key: RecordKey, deleted_at: datetime) -> Tombstone:
        """Retire a record by writing its tombstone unit.

        The live unit is left alone; the tombstone wins over it on every merge,
        which also retires stale copies a sync tool may bring back later.
        """
        tombstone = Tombstone(kind=key.kind, identity=key.identity, deleted_at=deleted_at)
        self.save(tombstone)
        return tombstone


@contextmanager
def _atomic_writer(path: Path) -> Iterator[IO[bytes]]:
    """Yield a temp file next to ``path`` that replaces it on success only."""
    fd, tmp_name = tempfile.mkstemp(
        prefix=f"{SCRATCH_PREFIX}{path.name}.", suffix=SCRATCH_SUFFIX, dir=path.parent
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    finally:
        # Gone already after a successful replace.
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass


# --- Codec ---


def encode_record(record: Record) -> bytes:
    """Serialize a record to a self-describing, checksummed unit."""
    if isinstance(record, Tombstone):
        kind, payload = record.kind, _tombstone_to_payload(record)
    elif isinstance(record, Feed):
        kind, payload = RecordKind.FEED, _feed_to_payload(record)
    elif isinstance(record, Item):
        kind, payload = RecordKind.ITEM, _item_to_payload(record)
    else:
        raise TypeError(f"Not a record: {record!r}")

    tombstone = isinstance(record, Tombstone)
    unit = {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "kind": kind.value,
        "tombstone": tombstone,
        "checksum": _checksum(kind.value, tombstone, payload),
        "payload": payload,
    }
    return json.dumps(unit, sort_keys=True, indent=1, ensure_ascii=False).encode("utf-8")


def decode_record(data: bytes) -> Record:
    """Parse and verify a unit produced by ``encode_record``.

    Raises:
        RecordFormatError: If the unit is truncated, tampered with or of an unknown format.
    """
    try:
        unit = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RecordFormatError(f"not valid JSON: {e}") from e

    if not isinstance(unit, dict) or unit.get("format") != FORMAT_NAME:
        raise RecordFormatError("not a syncfeed record")
    if unit.get("version") != FORMAT_VERSION:
        raise RecordFormatError(f"unsupported version {unit.get('version')!r}")

    kind_name = unit.get("kind")
    tombstone = unit.get("tombstone")
    payload = unit.get("payload")
    if not isinstance(payload, dict) or not isinstance(tombstone, bool):
        raise RecordFormatError("missing payload")
    if unit.get("checksum") != _checksum(kind_name, tombstone, payload):
        raise RecordFormatError("checksum mismatch")

    try:
        kind = RecordKind(kind_name)
        if tombstone:
            return _payload_to_tombstone(kind, payload)
        if kind is RecordKind.FEED:
            return _payload_to_feed(payload)
        return _payload_to_item(payload)
    except (KeyError, TypeError, ValueError, binascii.Error) as e:
        raise RecordFormatError(f"malformed {kind_name} payload: {e}") from e


def _checksum(kind: str, tombstone: bool, payload: dict) -> str:
    canonical = json.dumps(
        {"kind": kind, "tombstone": tombstone, "payload": payload},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(canonical.encode("ascii")).hexdigest()


def _feed_to_payload(feed: Feed) -> dict:
    return {
        "identity": feed.identity,
        "url": feed.url,
        "subscribed_at": _dt_to_str(feed.subscribed_at),
        "title": feed.title,
        "title_at": _dt_to_str(feed.title_at),
        "custom_title": feed.custom_title,
        "custom_title_at": _dt_to_str(feed.custom_title_at),
        "custom_title_by": feed.custom_title_by,
        "last_fetched_at": _dt_to_str(feed.last_fetched_at),
    }


def _payload_to_feed(payload: dict) -> Feed:
    return Feed(
        identity=payload["identity"],
        url=payload["url"],
        subscribed_at=_required_dt(payload["subscribed_at"]),
        title=payload.get("title"),
        title_at=_str_to_dt(payload.get("title_at")),
        custom_title=payload.get("custom_title"),
        custom_title_at=_str_to_dt(payload.get("custom_title_at")),
        custom_title_by=payload.get("custom_title_by") or "",
        last_fetched_at=_str_to_dt(payload.get("last_fetched_at")),
    )


def _item_to_payload(item: Item) -> dict:
    return {
        "identity": item.identity,
        "feed_id": item.feed_id,
        "title": item.title,
        "guid": item.guid,
        "link": item.link,
        "published_at": _dt_to_str(item.published_at),
        "body": base64.b64encode(item.body).decode("ascii"),
        "first_seen": _dt_to_str(item.first_seen),
        "read": item.read,
        "read_at": _dt_to_str(item.read_at),
        "starred": item.starred,
        "starred_at": _dt_to_str(item.starred_at),
        "starred_by": item.starred_by,
    }


def _payload_to_item(payload: dict) -> Item:
    return Item(
        identity=payload["identity"],
        feed_id=payload["feed_id"],
        title=payload["title"],
        guid=payload.get("guid"),
        link=payload.get("link"),
        published_at=_str_to_dt(payload.get("published_at")),
        body=base64.b64decode(payload["body"], validate=True),
        first_seen=_required_dt(payload["first_seen"]),
        read=bool(payload["read"]),
        read_at=_str_to_dt(payload.get("read_at")),
        starred=bool(payload["starred"]),
        starred_at=_str_to_dt(payload.get("starred_at")),
        starred_by=payload.get("starred_by") or "",
    )


def _tombstone_to_payload(tombstone: Tombstone) -> dict:
    return {
        "identity": tombstone.identity,
        "deleted_at": _dt_to_str(tombstone.deleted_at),
    }


def _payload_to_tombstone(kind: RecordKind, payload: dict) -> Tombstone:
    return Tombstone(
        kind=kind,
        identity=payload["identity"],
        deleted_at=_required_dt(payload["deleted_at"]),
    )


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        raise ValueError(f"timestamp without time zone: {s}")
    return dt


def _required_dt(s: str | None) -> datetime:
    dt = _str_to_dt(s)
    if dt is None:
        raise ValueError("missing timestamp")
    return dt
