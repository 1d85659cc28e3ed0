"""
Live channel transports.

The board client only needs something it can subscribe to per event kind:

    subscribe(kind, handler) -> token
    unsubscribe(token)
    close()

BroadcasterTransport - in-process, straight off a LiveUpdateBroadcaster
SseTransport         - Server-Sent Events from board_server.py, read on a
                       background thread with requests

Handlers may be called from any thread; the client marshals onto its loop.
"""
import json
import logging
import threading
import uuid
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

import requests

from .broadcaster import LiveUpdateBroadcaster, project_channel
from .errors import ValidationFailed
from .schema import EventKind, LiveUpdateEvent
from .session import Session

logger = logging.getLogger(__name__)

Handler = Callable[[LiveUpdateEvent], None]


# ── SSE framing ──────────────────────────────────────────────────────────────

def format_sse(event: LiveUpdateEvent) -> str:
    """One Server-Sent Events frame for a live update."""
    data = json.dumps(event.to_wire(), separators=(",", ":"))
    return f"event: {event.kind.wire_name}\ndata: {data}\n\n"


def format_sse_comment(text: str) -> str:
    return f": {text}\n\n"


def iter_sse_frames(lines: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """
    Group decoded SSE lines into (event name, data) pairs.

    Comment lines and frames without data are skipped; multi-line data is
    joined with newlines as the SSE format requires.
    """
    name = "message"
    data = []
    for line in lines:
        if line == "":
            if data:
                yield name, "\n".join(data)
            name, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            name = value
        elif field_name == "data":
            data.append(value)
    if data:
        yield name, "\n".join(data)


def decode_frame(name: str, data: str) -> Optional[LiveUpdateEvent]:
    """Parse one frame into an event, or None if it is not a task event."""
    if EventKind.from_wire(name) is None:
        return None
    try:
        return LiveUpdateEvent.from_wire(json.loads(data))
    except (ValueError, KeyError, ValidationFailed) as e:
        logger.warning(f"Dropping malformed {name} frame: {e}")
        return None


# ── Transports ───────────────────────────────────────────────────────────────

class Transport:
    """Routes incoming live updates to handlers registered per event kind."""

    def __init__(self):
        self._lock = threading.Lock()
        # token -> (kind, handler)
        self._handlers: Dict[str, Tuple[EventKind, Handler]] = {}

    def start(self) -> None:
        """Begin delivering. In-process transports are live from construction."""

    def subscribe(self, kind: EventKind, handler: Handler) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._handlers[token] = (kind, handler)
        return token

    def unsubscribe(self, token: str) -> bool:
        with self._lock:
            return self._handlers.pop(token, None) is not None

    def dispatch(self, event: LiveUpdateEvent) -> None:
        with self._lock:
            targets = [h for kind, h in self._handlers.values() if kind == event.kind]
        for handler in targets:
            try:
                handler(event)
            except Exception:
                logger.exception(f"{event.kind.wire_name} handler failed")

    def close(self) -> None:
        with self._lock:
            self._handlers.clear()


class BroadcasterTransport(Transport):
    """Subscribes directly to an in-process broadcaster."""

    def __init__(self, broadcaster: LiveUpdateBroadcaster, project_id: str):
        super().__init__()
        self.broadcaster = broadcaster
        self.project_id = project_id
        self._token: Optional[str] = broadcaster.subscribe(project_channel(project_id), self.dispatch)

    def close(self) -> None:
        if self._token is not None:
            self.broadcaster.unsubscribe(self._token)
            self._token = None
        super().close()


class SseTransport(Transport):
    """
    Reads /api/projects/<id>/events on a daemon thread.

    There is no resume: if the stream drops, events published meanwhile are
    lost and the client must reload. on_disconnect is called once when the
    stream ends for any reason other than close().
    """

    def __init__(self, session: Session, project_id: str,
                 on_disconnect: Optional[Callable[[Optional[Exception]], None]] = None):
        super().__init__()
        self.session = session
        self.project_id = project_id
        self.on_disconnect = on_disconnect
        self._stop = threading.Event()
        self._response: Optional[requests.Response] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"sse-{self.project_id[:8]}", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        url = self.session.url(f"/api/projects/{self.project_id}/events")
        error: Optional[Exception] = None
        try:
            with self.session.http.get(
                url,
                headers={**self.session.headers(), "Accept": "text/event-stream"},
                stream=True,
                timeout=(self.session.request_timeout, None),
            ) as r:
                r.raise_for_status()
                self._response = r
                lines = r.iter_lines(decode_unicode=True)
                for name, data in iter_sse_frames(lines):
                    if self._stop.is_set():
                        break
                    event = decode_frame(name, data)
                    if event is not None:
                        self.dispatch(event)
        except requests.RequestException as e:
            error = e
            if not self._stop.is_set():
                logger.warning(f"Live channel for {self.project_id} dropped: {e}")
        finally:
            self._response = None
        if not self._stop.is_set() and self.on_disconnect is not None:
            self.on_disconnect(error)

    def close(self) -> None:
        self._stop.set()
        response = self._response
        if response is not None:
            response.close()
        super().close()
