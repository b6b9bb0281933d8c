"""
Named-topic publish/subscribe channel.

Services publish status and connectivity changes here instead of holding
references to whoever cares about them (UI push, event log, other services).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

log = logging.getLogger("server_panel.events")

ALL_TOPICS = "*"


class Topic:
    RCON_CONNECTED = "rcon.connected"
    RCON_DISCONNECTED = "rcon.disconnected"

    BRIDGE_CONFIGURED = "bridge.configured"
    BRIDGE_STARTED = "bridge.started"
    BRIDGE_STOPPED = "bridge.stopped"
    BRIDGE_MOD_STATUS = "bridge.mod_status"
    BRIDGE_RESULT = "bridge.result"
    BRIDGE_PLAYER_CONNECT = "bridge.player_connect"
    BRIDGE_PLAYER_DISCONNECT = "bridge.player_disconnect"

    RESTART_PHASE = "restart.phase"


Callback = Callable[[str, Any], Any]


class EventBus:
    """Fan-out of (topic, payload) to any number of subscribers.

    Callbacks receive ``(topic, payload)``. A callback may be a coroutine
    function; it is then scheduled on the running loop. A failing subscriber
    is logged and never breaks the publisher or the other subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Callback]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callback) -> Callable[[], None]:
        with self._lock:
            self._subs.setdefault(topic, []).append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, callback)

        return _unsubscribe

    def unsubscribe(self, topic: str, callback: Callback) -> None:
        with self._lock:
            subs = self._subs.get(topic) or []
            if callback in subs:
                subs.remove(callback)

    def publish(self, topic: str, payload: Any = None) -> None:
        with self._lock:
            targets = list(self._subs.get(topic, [])) + list(self._subs.get(ALL_TOPICS, []))
        for cb in targets:
            try:
                res = cb(topic, payload)
                if inspect.isawaitable(res):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        log.warning("Async subscriber for %s called outside an event loop; dropped", topic)
                        if inspect.iscoroutine(res):
                            res.close()
                        continue
                    task = loop.create_task(res)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                log.exception("Event subscriber failed topic=%s", topic)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Async event subscriber failed", exc_info=task.exception())


class RecentEvents:
    """Bounded ring of the latest events, for diagnostics endpoints."""

    def __init__(self, maxlen: int = 200) -> None:
        self._lock = threading.Lock()
        self._items: Deque[dict] = deque(maxlen=maxlen)

    def __call__(self, topic: str, payload: Any) -> None:
        with self._lock:
            self._items.append({"ts": time.time(), "topic": topic, "payload": _jsonable(payload)})

    def snapshot(self, limit: Optional[int] = None) -> List[dict]:
        with self._lock:
            items = list(self._items)
        if limit:
            items = items[-limit:]
        return items


def log_event(topic: str, payload: Any) -> None:
    """Subscriber that writes every event to the log."""
    if topic == Topic.BRIDGE_RESULT:
        log.debug("event %s %s", topic, payload)
    else:
        log.info("event %s %s", topic, payload)


def _jsonable(payload: Any) -> Any:
    if hasattr(payload, "to_dict"):
        return payload.to_dict()
    if isinstance(payload, (dict, list, str, int, float, bool)) or payload is None:
        return payload
    return str(payload)
