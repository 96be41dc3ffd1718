import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional


logger = logging.getLogger("uvicorn.error")

STATUS = "status"
ASSISTANT_DELTA = "assistant-delta"
ASSISTANT_COMPLETE = "assistant-complete"
CHANGES_FINAL = "changes-final"
RESULT = "result"
COMPLETE = "complete"
ERROR = "error"

TERMINAL_EVENTS = {COMPLETE, ERROR}


@dataclass(frozen=True)
class Event:
    type: str
    data: Dict[str, Any]


def sse_format(event: Event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.data, ensure_ascii=False)}\n\n"


class EventStream:
    """Ordered event sequence for one run, closed by exactly one terminal event.

    The run writes into an unbounded queue so it never waits on the reader; a
    reader that goes away simply stops draining it.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.history: List[Event] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._terminal: Optional[str] = None
        self._last_status: Optional[tuple] = None

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> bool:
        if self._terminal is not None:
            logger.warning("Run %s dropped %s event after %s", self.run_id, event_type, self._terminal)
            return False
        event = Event(event_type, dict(data or {}))
        self.history.append(event)
        self._queue.put_nowait(event)
        if event_type in TERMINAL_EVENTS:
            self._terminal = event_type
            self._queue.put_nowait(None)
        return True

    def status(self, message: str, is_searching: Optional[bool] = None) -> bool:
        payload: Dict[str, Any] = {"message": message}
        if is_searching is not None:
            payload["isSearching"] = is_searching
        return self.emit(STATUS, payload)

    def search_status(self, is_searching: bool) -> bool:
        """Announce a searching/generating transition; repeats are suppressed."""
        key = ("search", is_searching)
        if self._last_status == key:
            return False
        self._last_status = key
        return self.status("searching" if is_searching else "generating", is_searching=is_searching)

    def delta(self, text: str) -> bool:
        return self.emit(ASSISTANT_DELTA, {"delta": text})

    def complete(self, message: str = "Processing complete") -> bool:
        return self.emit(COMPLETE, {"message": message})

    def error(self, message: str, error: str = "Failed to generate content") -> bool:
        return self.emit(ERROR, {"error": error, "message": message})

    def types(self) -> List[str]:
        return [event.type for event in self.history]

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
