from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Protocol

from meetslot.domain import RoundRobinCursor

logger = logging.getLogger(__name__)


class CursorStore(Protocol):
    def get(self, schedule_id: str) -> RoundRobinCursor | None: ...

    def compare_and_set(self, schedule_id: str, expected_member_id: str | None, new_member_id: str) -> bool: ...

    def set(self, schedule_id: str, member_id: str) -> None: ...


class InMemoryCursorStore:
    def __init__(self) -> None:
        self._cursors: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, schedule_id: str) -> RoundRobinCursor | None:
        with self._lock:
            member_id = self._cursors.get(schedule_id)
        if member_id is None:
            return None
        return RoundRobinCursor(schedule_id=schedule_id, last_assigned_member_id=member_id)

    def compare_and_set(self, schedule_id: str, expected_member_id: str | None, new_member_id: str) -> bool:
        with self._lock:
            if self._cursors.get(schedule_id) != expected_member_id:
                return False
            self._cursors[schedule_id] = new_member_id
            return True

    def set(self, schedule_id: str, member_id: str) -> None:
        with self._lock:
            self._cursors[schedule_id] = member_id


def load_cursors(path: str) -> dict[str, str]:
    if not os.path.exists(path):
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except json.JSONDecodeError:
        # Corrupted state restarts rotation from the first member.
        logger.warning("Cursor file %s is corrupted, starting fresh", path)
        return {}

    cursors: dict[str, str] = {}
    for item in raw.get("cursors", []):
        try:
            cursors[str(item["schedule_id"])] = str(item["last_assigned_member_id"])
        except (KeyError, TypeError):
            continue
    return cursors


def save_cursors(path: str, cursors: dict[str, str]) -> None:
    data = {
        "cursors": [
            {"schedule_id": schedule_id, "last_assigned_member_id": member_id}
            for schedule_id, member_id in sorted(cursors.items())
        ],
    }

    folder = os.path.dirname(os.path.abspath(path))
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)

    # Atomic write
    with tempfile.NamedTemporaryFile("w", delete=False, encoding="utf-8", dir=folder, suffix=".tmp") as tf:
        json.dump(data, tf, ensure_ascii=False, indent=2)
        tmp_name = tf.name

    os.replace(tmp_name, path)


class JsonFileCursorStore:
    """One JSON file holding the cursor of every schedule.

    Compare-and-set is atomic inside one process only. Several processes
    sharing a file need a database-backed store with a conditional update.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def get(self, schedule_id: str) -> RoundRobinCursor | None:
        with self._lock:
            member_id = load_cursors(self.path).get(schedule_id)
        if member_id is None:
            return None
        return RoundRobinCursor(schedule_id=schedule_id, last_assigned_member_id=member_id)

    def compare_and_set(self, schedule_id: str, expected_member_id: str | None, new_member_id: str) -> bool:
        with self._lock:
            cursors = load_cursors(self.path)
            if cursors.get(schedule_id) != expected_member_id:
                return False
            cursors[schedule_id] = new_member_id
            save_cursors(self.path, cursors)
            return True

    def set(self, schedule_id: str, member_id: str) -> None:
        with self._lock:
            cursors = load_cursors(self.path)
            cursors[schedule_id] = member_id
            save_cursors(self.path, cursors)
