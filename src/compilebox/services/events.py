from __future__ import annotations
import threading
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from .registry import SandboxRegistry

log = structlog.get_logger(__name__)


def parse_event(message: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """(container_id, action) of a docker event, handling both the old and new message shapes."""
    if not isinstance(message, Mapping):
        return None, None
    if message.get("Type", "container") != "container":
        return None, None
    action = message.get("Action") or message.get("status")
    container_id = message.get("id") or (message.get("Actor") or {}).get("ID")
    return (str(container_id) if container_id else None, str(action) if action else None)


class EventRouter:
    """
    Forwards the engine's global event stream to the sandbox owning each container.
    Events for ids that are not (or no longer) registered are dropped.
    """

    def __init__(self, client: Any, registry: SandboxRegistry, retry_seconds: float = 1.0):
        self._client = client
        self._registry = registry
        self._retry_seconds = retry_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._stream = None
        # newest engine timestamp seen, so a resubscription replays what it missed
        self._last_event_time: Optional[int] = None

    def route(self, message: Mapping[str, Any]) -> bool:
        container_id, action = parse_event(message)
        if not container_id or not action:
            return False

        sandbox = self._registry.get(container_id)
        if sandbox is None:
            return False

        try:
            sandbox.handle_event(action, message)
        except Exception:
            # one broken sandbox must not take the stream down for the others
            log.exception("event_route_failed", container_id=container_id, action=action)
        return True

    # ---------------- monitoring ----------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._listen, name="compilebox-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                log.warning("event_stream_close_failed", error=str(e))
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _listen(self) -> None:
        log.info("event_router_started")
        while not self._stop.is_set():
            try:
                self._stream = self._subscribe()
                for message in self._stream:
                    if self._stop.is_set():
                        break
                    self._track_time(message)
                    self.route(message)
            except Exception as e:
                if self._stop.is_set():
                    break
                log.error("event_stream_failed", error=str(e))
            finally:
                self._stream = None
            # stream ended or broke: resubscribe after a short pause
            self._stop.wait(self._retry_seconds)
        log.info("event_router_stopped")

    def _subscribe(self) -> Any:
        kwargs: Dict[str, Any] = {"decode": True, "filters": {"type": "container"}}
        if self._last_event_time is not None:
            # replayed duplicates are dropped by the sandbox's monotonic transitions
            kwargs["since"] = self._last_event_time
        return self._client.events(**kwargs)

    def _track_time(self, message: Any) -> None:
        if not isinstance(message, Mapping):
            return
        seen = message.get("time")
        if seen is None and message.get("timeNano") is not None:
            seen = int(message["timeNano"]) // 1_000_000_000
        if seen is None:
            return
        seen = int(seen)
        if self._last_event_time is None or seen > self._last_event_time:
            self._last_event_time = seen
