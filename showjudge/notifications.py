"""Real-time fan-out of phase and results announcements.

Delivery contract: asynchronous, best effort, at most once per connected
subscriber, no retry and no persistence. A subscriber that is not connected
when a broadcast happens never sees it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Set, Union

from showjudge.models import Role, SUBSCRIBER_ROLES

log = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


def channel_for(role: Union[Role, str]) -> str:
    return f"role:{Role(role).value}"


@dataclass
class BroadcastReceipt:
    """Returned immediately; delivery continues on the subscribers' event loops."""

    recipients: int
    futures: List[Future] = field(default_factory=list)

    def wait(self, timeout: Optional[float] = None) -> int:
        """Block until delivery finished; returns how many sends succeeded."""
        return sum(f.result(timeout=timeout) for f in self.futures)


class Broadcaster(ABC):
    @abstractmethod
    def broadcast(self, role_filter: Union[Role, str], message: str, icon: str) -> BroadcastReceipt:
        """Announce to every connected subscriber of ``role_filter`` without blocking.

        ``Role.ALL`` reaches every subscriber. Zero subscribers is not an error.
        """


@dataclass(eq=False)
class _Subscription:
    socket: Subscriber
    role: Role
    loop: asyncio.AbstractEventLoop


class NotificationHub(Broadcaster):
    """Role-channel fan-out over WebSocket-like subscribers.

    Subscribers are registered together with the event loop that owns them, so
    ``broadcast`` can be called from any thread (request handlers run in a
    thread pool) and hands the sends to that loop.
    """

    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._lock = threading.Lock()
        self._channels: Dict[str, Set[_Subscription]] = {}
        self._by_socket: Dict[int, _Subscription] = {}

    def subscribe(
        self,
        socket: Subscriber,
        role: Union[Role, str],
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        role = Role(role)
        if role not in SUBSCRIBER_ROLES:
            raise ValueError(f"Cannot subscribe as {role.value!r}")
        sub = _Subscription(socket, role, loop or asyncio.get_running_loop())
        with self._lock:
            self._by_socket[id(socket)] = sub
            for channel in (channel_for(role), channel_for(Role.ALL)):
                self._channels.setdefault(channel, set()).add(sub)
        log.info(f"Subscriber joined {channel_for(role)}, total: {self.count()}")

    def unsubscribe(self, socket: Subscriber) -> None:
        with self._lock:
            sub = self._by_socket.pop(id(socket), None)
            if sub is None:
                return
            for members in self._channels.values():
                members.discard(sub)
        log.info(f"Subscriber left {channel_for(sub.role)}, remaining: {self.count()}")

    def count(self, role_filter: Union[Role, str] = Role.ALL) -> int:
        with self._lock:
            return len(self._channels.get(channel_for(role_filter), ()))

    def broadcast(self, role_filter: Union[Role, str], message: str, icon: str) -> BroadcastReceipt:
        channel = channel_for(role_filter)
        with self._lock:
            targets = list(self._channels.get(channel, ()))
        if not targets:
            log.debug(f"No subscribers on {channel}; dropping {message!r}")
            return BroadcastReceipt(recipients=0)

        payload = {"type": "notification", "message": message, "icon": icon}
        by_loop: Dict[asyncio.AbstractEventLoop, List[_Subscription]] = {}
        for sub in targets:
            by_loop.setdefault(sub.loop, []).append(sub)

        futures = []
        for loop, subs in by_loop.items():
            try:
                futures.append(asyncio.run_coroutine_threadsafe(self._deliver(subs, payload), loop))
            except RuntimeError as e:
                # loop already closed: those sockets are gone
                log.warning(f"Dropping {len(subs)} subscriber(s) on a closed loop: {e}")
                for sub in subs:
                    self.unsubscribe(sub.socket)
        log.info(f"Broadcast to {channel} ({len(targets)} recipient(s)): {message}")
        return BroadcastReceipt(recipients=len(targets), futures=futures)

    async def _deliver(self, subs: List[_Subscription], payload: Dict[str, Any]) -> int:
        delivered = 0
        dead = []
        for sub in subs:
            try:
                await asyncio.wait_for(sub.socket.send_json(payload), timeout=self.send_timeout)
                delivered += 1
            except asyncio.TimeoutError:
                log.warning(f"Send timeout on {channel_for(sub.role)}, disconnecting slow subscriber")
                dead.append(sub)
            except Exception as e:
                log.debug(f"Delivery error on {channel_for(sub.role)}: {e}")
                dead.append(sub)

        for sub in dead:
            self.unsubscribe(sub.socket)
        return delivered
