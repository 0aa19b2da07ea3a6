"""Channels between the budget daemon and the rest of the fleet.

Three channels, each with a file-backed implementation (production) and an
in-memory one (tests, embedding):

    Inbox         FIFO of control messages. Many writers, ONE reader.
                  File form: inbox/<time_ns>_<pid>_<seq>.json, one message per file,
                  written via temp file + rename so the reader never sees a
                  half-written message. drain() reads and deletes in name order.

    MarkerStore   Durable list of completed bucket names.
                  File form: done_markers.txt, newline-separated.

    StatusChannel Single-slot snapshot. publish() overwrites; readers only ever
                  see the latest value.
                  File form: status.json, replaced atomically.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Union

from budget_store import atomic_write, atomic_write_json

_log = logging.getLogger(__name__)

RawMessage = Union[str, bytes, Dict[str, Any]]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class Inbox(Protocol):
    def post(self, message: Dict[str, Any]) -> None: ...
    def drain(self) -> List[RawMessage]: ...


class MarkerStore(Protocol):
    def read(self) -> List[str]: ...
    def append(self, bucket: str) -> None: ...
    def clear(self) -> None: ...


class StatusChannel(Protocol):
    def publish(self, snapshot: Dict[str, Any]) -> None: ...
    def latest(self) -> Optional[Dict[str, Any]]: ...


def _parse_markers(text: str) -> List[str]:
    """Non-empty, stripped, first-seen order, no duplicates."""
    seen: List[str] = []
    for line in text.splitlines():
        name = line.strip()
        if name and name not in seen:
            seen.append(name)
    return seen


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class FileInbox:
    """Directory-backed control inbox."""

    SUFFIX = ".json"

    # per-process ordering state shared by every FileInbox instance
    _name_lock = threading.Lock()
    _last_stamp = 0
    _seq = itertools.count()

    def __init__(self, inbox_dir: str):
        self.inbox_dir = inbox_dir
        os.makedirs(self.inbox_dir, exist_ok=True)

    @classmethod
    def _next_name(cls) -> str:
        """<stamp>_<pid>_<seq>.json; never sorts before an earlier post from this process."""
        with cls._name_lock:
            stamp = max(time.time_ns(), cls._last_stamp)
            cls._last_stamp = stamp
            seq = next(cls._seq)
        return f"{stamp:020d}_{os.getpid():010d}_{seq:012d}{cls.SUFFIX}"

    def post(self, message: Dict[str, Any]) -> str:
        """Enqueue one message. Returns the path of the message file."""
        os.makedirs(self.inbox_dir, exist_ok=True)
        path = os.path.join(self.inbox_dir, self._next_name())
        atomic_write(path, json.dumps(message).encode("utf-8"))
        return path

    def pending(self) -> List[str]:
        """Message file names currently queued, oldest first."""
        try:
            names = os.listdir(self.inbox_dir)
        except FileNotFoundError:
            return []
        return sorted(
            n for n in names
            if n.endswith(self.SUFFIX) and not n.startswith("_tmp_")
        )

    def drain(self) -> List[RawMessage]:
        """Read and delete every message queued when the drain started.

        Files that appear while draining are left for the next drain. A file
        that cannot be deleted is not returned (it will be retried), so a
        message is never applied twice.
        """
        drained: List[RawMessage] = []
        for name in self.pending():
            path = os.path.join(self.inbox_dir, name)
            try:
                with open(path, "rb") as f:
                    raw = f.read()
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                _log.warning(f"Inbox entry {name} not consumed: {e}")
                continue
            drained.append(raw)
        return drained


class MemoryInbox:
    """In-process inbox. post() accepts dicts or raw text (for malformed tests)."""

    def __init__(self):
        self._queue: Deque[RawMessage] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    def post(self, message: RawMessage) -> None:
        self._queue.append(message)

    def drain(self) -> List[RawMessage]:
        count = len(self._queue)
        return [self._queue.popleft() for _ in range(count)]


# ---------------------------------------------------------------------------
# Completion markers
# ---------------------------------------------------------------------------

class FileMarkerStore:
    """done_markers.txt -- appended by consumers, truncated on reset."""

    def __init__(self, path: str):
        self.path = path

    def read(self) -> List[str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                return _parse_markers(f.read())
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            _log.warning(f"Marker store unreadable ({self.path}): {e}")
            return []

    def append(self, bucket: str) -> None:
        bucket = bucket.strip()
        if not bucket or bucket in self.read():
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "a+", encoding="utf-8", errors="replace") as f:
            # other writers may leave the last line unterminated
            f.seek(0)
            existing = f.read()
            prefix = "\n" if existing and not existing.endswith("\n") else ""
            f.write(prefix + bucket + "\n")

    def clear(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "w", encoding="utf-8"):
            pass


class MemoryMarkerStore:
    def __init__(self, initial: Optional[List[str]] = None):
        self._markers: List[str] = _parse_markers("\n".join(initial or []))

    def read(self) -> List[str]:
        return list(self._markers)

    def append(self, bucket: str) -> None:
        bucket = bucket.strip()
        if bucket and bucket not in self._markers:
            self._markers.append(bucket)

    def clear(self) -> None:
        self._markers.clear()


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------

class FileStatusChannel:
    """status.json -- overwritten atomically on every publish."""

    def __init__(self, path: str):
        self.path = path

    def publish(self, snapshot: Dict[str, Any]) -> None:
        atomic_write_json(self.path, snapshot)

    def latest(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError, RecursionError):
            return None
        return data if isinstance(data, dict) else None


class MemoryStatusChannel:
    def __init__(self):
        self._latest: Optional[Dict[str, Any]] = None
        self.publish_count = 0

    def publish(self, snapshot: Dict[str, Any]) -> None:
        self._latest = json.loads(json.dumps(snapshot))
        self.publish_count += 1

    def latest(self) -> Optional[Dict[str, Any]]:
        return self._latest
