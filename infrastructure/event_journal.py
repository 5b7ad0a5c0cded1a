"""
THREADLINE EVENT JOURNAL - Replayable Channel History

Records every event crossing an EventChannel for debugging and replay.

Architecture:
- EventJournal: wildcard subscriber, fans out to the sinks below
- EventBuffer: in-memory ring buffer for recent entries
- JournalFile: newline-delimited JSON, one file per UTC day

Usage:
    journal = EventJournal(channel, max_size=1000, log_path=Path("logs"))
    ...
    journal.get_last(10)
    journal.replay(EventChannel())   # re-publish into a fresh channel
"""
from typing import List, Optional
from datetime import datetime, timezone
from collections import deque
from pathlib import Path
import io
import logging
import threading

import msgspec

from core.ontology import EventKind
from infrastructure.event_bus import AnyEvent, EventChannel, FlowEvent


logger = logging.getLogger("threadline.event_journal")


class JournalEntry(msgspec.Struct, kw_only=True, frozen=True):
    """One recorded event."""
    sequence: int
    timestamp: str
    event: AnyEvent

    @property
    def kind(self) -> EventKind:
        return self.event.kind


# =============================================================================
# EVENT BUFFER
# =============================================================================

class EventBuffer:
    """
    Thread-safe ring buffer for recent journal entries.

    Provides O(1) append and O(n) query for filtering.
    """

    def __init__(self, max_size: int = 1000):
        self._buffer: deque[JournalEntry] = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._sequence = 0

    def append(self, entry: JournalEntry) -> None:
        with self._lock:
            self._buffer.append(entry)

    def get_since(self, timestamp: str) -> List[JournalEntry]:
        """Entries recorded at or after an ISO timestamp."""
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[JournalEntry]:
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_kind(self, kind: EventKind) -> List[JournalEntry]:
        with self._lock:
            return [e for e in self._buffer if e.kind == kind]

    def get_by_message(self, message_id: str) -> List[JournalEntry]:
        """Entries whose event names this message id (singly or in a batch)."""
        with self._lock:
            return [e for e in self._buffer if _mentions(e.event, message_id)]

    def entries(self) -> List[JournalEntry]:
        with self._lock:
            return list(self._buffer)

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def _mentions(event: FlowEvent, message_id: str) -> bool:
    if getattr(event, "message_id", None) == message_id:
        return True
    for field in ("message_ids", "order", "selected_message_ids"):
        if message_id in (getattr(event, field, None) or ()):
            return True
    return False


# =============================================================================
# JOURNAL FILE
# =============================================================================

class JournalFile:
    """
    Newline-delimited JSON event log, rotated daily.
    """

    def __init__(self, log_path: Path):
        self._log_path = Path(log_path)
        self._current_file: Optional[io.TextIOWrapper] = None
        self._current_date: Optional[str] = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder()

        self._log_path.mkdir(parents=True, exist_ok=True)

    def write(self, entry: JournalEntry) -> None:
        """Append one entry. I/O failures are logged, never raised."""
        with self._lock:
            try:
                self._ensure_file()
                line = self._encoder.encode(entry).decode("utf-8") + "\n"
                self._current_file.write(line)
                self._current_file.flush()
            except OSError as e:
                logger.error(f"Failed to write journal entry {entry.sequence}: {e}")

    def _ensure_file(self) -> None:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._current_date != today:
            if self._current_file:
                self._current_file.close()
            self._current_file = open(self.path_for(today), "a", encoding="utf-8")
            self._current_date = today

    def path_for(self, date: str) -> Path:
        return self._log_path / f"events_{date}.jsonl"

    def close(self) -> None:
        with self._lock:
            if self._current_file:
                self._current_file.close()
                self._current_file = None
                self._current_date = None

    def read_log(self, date: str) -> List[JournalEntry]:
        """
        Read entries for a UTC date (YYYY-MM-DD).

        Lines that do not decode are skipped with a warning.
        """
        filepath = self.path_for(date)
        if not filepath.exists():
            return []

        decoder = msgspec.json.Decoder(type=JournalEntry)
        entries = []
        with open(filepath, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(decoder.decode(line))
                except msgspec.DecodeError as e:
                    logger.warning(f"Skipping bad journal line {filepath}:{lineno}: {e}")
        return entries


# =============================================================================
# JOURNAL
# =============================================================================

class EventJournal:
    """
    Wildcard subscriber that records everything published on a channel.
    """

    def __init__(
        self,
        channel: Optional[EventChannel] = None,
        max_size: int = 1000,
        log_path: Optional[Path] = None,
    ):
        self._buffer = EventBuffer(max_size)
        self._file: Optional[JournalFile] = JournalFile(log_path) if log_path else None
        self._channel: Optional[EventChannel] = None
        if channel is not None:
            self.attach(channel)

    def attach(self, channel: EventChannel) -> None:
        if self._channel is not None:
            self._channel.unsubscribe_all(self.record)
        self._channel = channel
        channel.subscribe_all(self.record)

    def detach(self) -> None:
        if self._channel is not None:
            self._channel.unsubscribe_all(self.record)
            self._channel = None

    def record(self, event: FlowEvent) -> JournalEntry:
        entry = JournalEntry(
            sequence=self._buffer.next_sequence(),
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
        )
        self._buffer.append(entry)
        if self._file is not None:
            self._file.write(entry)
        return entry

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_last(self, n: int = 100) -> List[JournalEntry]:
        return self._buffer.get_last(n)

    def get_since(self, timestamp: str) -> List[JournalEntry]:
        return self._buffer.get_since(timestamp)

    def get_by_kind(self, kind: EventKind) -> List[JournalEntry]:
        return self._buffer.get_by_kind(kind)

    def get_by_message(self, message_id: str) -> List[JournalEntry]:
        return self._buffer.get_by_message(message_id)

    def kinds(self) -> List[EventKind]:
        """Kinds of buffered entries in recording order."""
        return [e.kind for e in self._buffer.entries()]

    def replay(self, channel: EventChannel, entries: Optional[List[JournalEntry]] = None) -> int:
        """
        Re-publish entries (default: the whole buffer) into another channel.

        Returns:
            Number of events published
        """
        entries = self._buffer.entries() if entries is None else entries
        for entry in entries:
            channel.publish(entry.event)
        return len(entries)

    def clear(self) -> None:
        self._buffer.clear()

    def close(self) -> None:
        self.detach()
        if self._file is not None:
            self._file.close()

    def __len__(self) -> int:
        return len(self._buffer)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
