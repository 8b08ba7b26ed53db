# lab_core/computers.py
from __future__ import annotations
import re
import datetime as dt
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping

from lab_core.errors import InvalidStatusError

# ---- Allowed computer states ----
FREE = "free"
BUSY = "busy"
DOWN = "down"
STATUSES = (FREE, BUSY, DOWN)

_DIGITS = re.compile(r"(\d+)")


def now_iso() -> str:
    """Current UTC time, e.g. 2026-10-19T12:00:00+00:00."""
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")


def natural_key(text: str):
    """
    Numeric-aware sort key: "pc-2" sorts before "pc-10".

    re.split with a capturing group always alternates text/number starting
    with text, so two keys compare slot by slot without mixing str and int.
    The raw string is the final tie-breaker ("pc-01" vs "pc-1").
    """
    parts = _DIGITS.split(text)
    key = [int(p) if i % 2 else p for i, p in enumerate(parts)]
    return key, text


def canonical_id(room: str, index: int) -> str:
    return f"{room}-{index:03d}"


def validate_status(status: Any) -> str:
    if status not in STATUSES:
        raise InvalidStatusError(status)
    return status


@dataclass
class Computer:
    id: str
    status: str = FREE
    note: str = ""
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Room:
    room: str
    total: int = 0
    computers: List[Computer] = field(default_factory=list)

    @classmethod
    def empty(cls, room: str) -> "Room":
        return cls(room=room, total=0, computers=[])

    def find(self, computer_id: str) -> Computer | None:
        for c in self.computers:
            if c.id == computer_id:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room": self.room,
            "total": self.total,
            "computers": [c.to_dict() for c in self.computers],
        }


# ----------------------- Normalization -----------------------
def _coerce_total(value: Any) -> int:
    try:
        total = int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, total)


def as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _coerce_computer(raw: Any) -> Computer | None:
    if not isinstance(raw, Mapping):
        return None
    cid = as_text(raw.get("id"))
    if cid == "":
        return None
    status = as_text(raw.get("status"))
    if status not in STATUSES:
        status = FREE
    updated_at = raw.get("updated_at")
    if not isinstance(updated_at, str) or not updated_at:
        updated_at = now_iso()
    return Computer(
        id=cid,
        status=status,
        note=as_text(raw.get("note")),
        updated_at=updated_at,
    )


def normalize_room(room: str, raw: Any) -> Room:
    """
    Coerce a raw (possibly malformed) document into a Room that satisfies
    every invariant:
      - total is a non-negative int, never below the computer count
      - computers are structured records with a non-empty id
      - status is one of STATUSES (anything else becomes "free")
      - one entry per id, the last occurrence wins
      - computers are natural-sorted by id

    Anything that is not a mapping is treated the same as an absent document.
    The room name always comes from the storage key, never from the payload.
    """
    if not isinstance(raw, Mapping):
        return Room.empty(room)

    by_id: Dict[str, Computer] = {}
    entries = raw.get("computers")
    if isinstance(entries, list):
        for entry in entries:
            computer = _coerce_computer(entry)
            if computer is not None:
                by_id[computer.id] = computer

    computers = sorted(by_id.values(), key=lambda c: natural_key(c.id))
    total = max(_coerce_total(raw.get("total")), len(computers))
    return Room(room=room, total=total, computers=computers)
