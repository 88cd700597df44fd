"""
Usage Sinks

A sink durably accepts batches of usage events. A batch is all-or-nothing
from the meter's point of view: `write` either returns or raises.

Two in-process sinks are provided here:

* CollectingUsageSink -- keeps batches in memory (tests, local mode).
* FileUsageSink -- appends events as JSON lines to a local file.

The database-backed sink lives in `meter_rail.persistence`.
"""

import asyncio
import json
from pathlib import Path
from threading import Lock
from typing import List, Protocol, Sequence, Union
import structlog

from ..core.types import UsageEvent

logger = structlog.get_logger()


class UsageSink(Protocol):
    """Durable write target for usage events."""

    async def write(self, events: Sequence[UsageEvent]) -> None:
        """Persist a batch of events, raising on failure."""
        ...


class CollectingUsageSink:
    """Keeps every written batch in memory."""

    def __init__(self):
        self._batches: List[List[UsageEvent]] = []
        self._lock = Lock()

    async def write(self, events: Sequence[UsageEvent]) -> None:
        with self._lock:
            self._batches.append(list(events))

    @property
    def batches(self) -> List[List[UsageEvent]]:
        with self._lock:
            return [list(b) for b in self._batches]

    @property
    def events(self) -> List[UsageEvent]:
        with self._lock:
            return [e for batch in self._batches for e in batch]


class FileUsageSink:
    """Appends usage events as newline-delimited JSON."""

    def __init__(self, path: Union[Path, str]):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def write(self, events: Sequence[UsageEvent]) -> None:
        if not events:
            return
        await asyncio.to_thread(self._append, list(events))

    def _append(self, events: List[UsageEvent]) -> None:
        payload = "".join(json.dumps(e.to_dict(), sort_keys=True) + "\n" for e in events)
        with self._lock:
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(payload)
        logger.debug("usage_events_appended", count=len(events), path=str(self._path))
