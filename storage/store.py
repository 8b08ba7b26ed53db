# storage/store.py
from __future__ import annotations
import hashlib
import json
import logging
import os
import stat
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List

from filelock import FileLock, Timeout

from lab_core.computers import (
    FREE,
    Computer,
    Room,
    as_text,
    canonical_id,
    natural_key,
    normalize_room,
    now_iso,
    validate_status,
)
from lab_core.errors import InvalidArgumentError, StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_ROOMS_DIR = Path(__file__).resolve().parents[1] / "db" / "rooms"
DEFAULT_LOCK_TIMEOUT = 10.0


class RoomStore:
    """
    One JSON document per room under `base_dir` (`<room>.json`).

    Reads never lock and never fail: a missing, unreadable or malformed
    document reads as an empty room. Writers only heal malformed content; a
    document they cannot open raises StorageUnavailableError instead. Every write holds the room's file lock
    for the whole read-modify-write and replaces the document in one piece.
    Nothing is cached between calls.
    """

    def __init__(
        self, base_dir: str | os.PathLike = DEFAULT_ROOMS_DIR,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailableError(
                f"Cannot create rooms directory {self.base_dir}: {exc}"
            ) from exc

    # ----------------------- Paths -----------------------
    def room_path(self, room: str) -> Path:
        return self.base_dir / f"{room}.json"

    def _lock_path(self, room: str) -> Path:
        # fixed length, so any room whose document name fits also gets a lock
        digest = hashlib.sha1(room.encode("utf-8")).hexdigest()[:16]
        return self.base_dir / f".lock-{digest}"

    # ----------------------- Reads -----------------------
    def _load_raw(self, room: str, strict: bool = False) -> Any:
        """
        Parsed JSON of the room's document, or None when there is none.

        Undecodable or unparsable content always reads as None so it heals on
        the next write. A file that exists but cannot be opened only reads as
        None for lock-free readers; with `strict` it raises, so a writer never
        replaces a document it could not see.
        """
        path = self.room_path(room)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            logger.warning("Room %s is not UTF-8, treating as empty: %s", room, exc)
            return None
        except OSError as exc:
            if strict:
                raise StorageUnavailableError(f"Cannot read room {room}: {exc}") from exc
            logger.warning("Room %s unreadable, treating as empty: %s", room, exc)
            return None
        try:
            return json.loads(text)
        except ValueError as exc:
            logger.warning("Room %s is not valid JSON, treating as empty: %s", room, exc)
            return None

    def read(self, room: str) -> Room:
        return normalize_room(room, self._load_raw(room))

    def list_rooms(self) -> List[str]:
        names = [p.stem for p in self.base_dir.glob("*.json") if p.is_file()]
        return sorted(names, key=natural_key)

    # ----------------------- Write path -----------------------
    @contextmanager
    def _locked(self, room: str) -> Iterator[Room]:
        """Hold the room's exclusive lock and yield its current state."""
        lock = FileLock(str(self._lock_path(room)), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as exc:
            raise StorageUnavailableError(f"Cannot lock room {room}") from exc
        except OSError as exc:
            raise StorageUnavailableError(f"Cannot lock room {room}: {exc}") from exc
        try:
            raw = self._load_raw(room, strict=True)
            if raw is None and not self.room_path(room).exists():
                logger.debug("Room %s has no document yet, creating it", room)
                current = Room.empty(room)
            else:
                current = normalize_room(room, raw)
            yield current
        finally:
            lock.release()

    def _write(self, room: Room) -> Room:
        """Normalize and atomically replace the room's document. Caller holds the lock."""
        data = normalize_room(room.room, room.to_dict())
        payload = json.dumps(data.to_dict(), indent=2, ensure_ascii=False)
        target = self.room_path(data.room)
        # short fixed-length name so long room names still fit
        tmp_name = str(self.base_dir / f".tmp-{uuid.uuid4().hex[:12]}")
        created = False
        try:
            # 0o666 minus the umask, like a plain open(); an existing document keeps its mode
            fd = os.open(tmp_name, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
            created = True
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                if target.exists():
                    os.chmod(tmp_name, stat.S_IMODE(target.stat().st_mode))
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except OSError as exc:
            if created and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageUnavailableError(f"Cannot write room {data.room}: {exc}") from exc
        logger.debug("Wrote room %s (%d computers)", data.room, len(data.computers))
        return data

    # ----------------------- Operations -----------------------
    def init_room(self, room: str, total: int) -> Room:
        """
        Rebuild the roster as the canonical ids <room>-001 .. <room>-<total>.

        Computers whose id is in that sequence keep their status, note and
        timestamp; new ones start free. Any other id (added by hand through
        update_computer) is dropped.
        """
        total = max(0, int(total))
        with self._locked(room) as current:
            existing = {c.id: c for c in current.computers}
            computers = []
            for i in range(1, total + 1):
                cid = canonical_id(room, i)
                computers.append(existing.get(cid) or Computer(id=cid))
            return self._write(Room(room=room, total=total, computers=computers))

    def update_computer(self, room: str, computer_id: str, status: str, note: str | None = "") -> Room:
        validate_status(status)
        if not computer_id:
            raise InvalidArgumentError("Computer id is required")
        with self._locked(room) as current:
            c = current.find(computer_id)
            if c is None:
                current.computers.append(
                    Computer(id=computer_id, status=status, note=as_text(note))
                )
            else:
                c.status = status
                c.note = as_text(note)
                c.updated_at = now_iso()
            current.total = max(current.total, len(current.computers))
            return self._write(current)

    def set_note(self, room: str, computer_id: str, note: str | None) -> Room:
        """Change only the note; a computer seen for the first time starts free."""
        if not computer_id:
            raise InvalidArgumentError("Computer id is required")
        with self._locked(room) as current:
            c = current.find(computer_id)
            if c is None:
                current.computers.append(Computer(id=computer_id, status=FREE, note=as_text(note)))
            else:
                c.note = as_text(note)
                c.updated_at = now_iso()
            current.total = max(current.total, len(current.computers))
            return self._write(current)

    def reset_room(self, room: str) -> Room:
        with self._locked(room) as current:
            stamp = now_iso()
            for c in current.computers:
                c.status = FREE
                c.note = ""
                c.updated_at = stamp
            return self._write(current)
