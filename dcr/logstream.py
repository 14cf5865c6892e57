from __future__ import annotations

import queue
from collections import deque
from threading import Lock, Thread, Timer
from typing import TYPE_CHECKING, Iterator

from . import db
from .docker_ops import LogStream, ObservedContainer
from .errors import ContainerRuntimeError, RuntimeUnavailable
from .settings import settings

if TYPE_CHECKING:
    from .reconciler import Reconciler


_END = object()


class Subscription:
    """One reader's view of a follow-mode stream, with its own cursor.

    Iterating blocks until the next line; ``poll`` waits at most ``timeout``
    seconds and returns None when nothing arrived (check ``done`` to tell a
    timeout from the end of the stream).
    """

    def __init__(self, broadcast: "_Broadcast", backlog: list[str]):
        self._broadcast = broadcast
        self._q: queue.Queue = queue.Queue()
        for line in backlog:
            self._q.put(line)
        self.done = False
        self._closed = False

    def _push(self, item: object) -> None:
        self._q.put(item)

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        if self.done:
            raise StopIteration
        item = self._q.get()
        if item is _END:
            self.done = True
            self.close()
            raise StopIteration
        return item  # type: ignore[return-value]

    def poll(self, timeout: float | None = None) -> str | None:
        if self.done:
            return None
        try:
            item = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _END:
            self.done = True
            self.close()
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._q.put(_END)
        self._broadcast.unsubscribe(self)


class _Broadcast:
    """Pumps one runtime follow stream and fans every line out to all subscribers."""

    def __init__(self, streamer: "LogStreamer", name: str, handle: LogStream, max_s: float, backlog_lines: int):
        self.streamer = streamer
        self.name = name
        self.handle = handle
        self.max_s = max_s
        self.lock = Lock()
        self.subscribers: list[Subscription] = []
        self.backlog: deque[str] = deque(maxlen=max(1, backlog_lines))
        self.finished = False
        self._thr = Thread(target=self._pump, name=f"dcr-logs-{name}", daemon=True)

    def start(self) -> None:
        self._thr.start()

    def subscribe(self) -> Subscription | None:
        with self.lock:
            if self.finished:
                return None
            return self._attach()

    def _attach(self) -> Subscription:
        sub = Subscription(self, list(self.backlog))
        self.subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self.lock:
            if sub in self.subscribers:
                self.subscribers.remove(sub)
            last = not self.subscribers and not self.finished
            if last:
                self.finished = True
        if last:
            # Nobody is reading anymore: release the runtime handle now.
            self.handle.close()
            self.streamer._forget(self)

    def close(self) -> None:
        self.handle.close()

    def _pump(self) -> None:
        timer = Timer(self.max_s, self.handle.close)
        timer.daemon = True
        timer.start()
        try:
            for line in self.handle:
                with self.lock:
                    self.backlog.append(line)
                    for s in self.subscribers:
                        s._push(line)
        except (ContainerRuntimeError, RuntimeUnavailable) as e:
            db.log_event("WARN", f"Log stream ended with error: {e}", container=self.name)
        finally:
            timer.cancel()
            with self.lock:
                self.finished = True
                subs = list(self.subscribers)
            for s in subs:
                s._push(_END)
            self.handle.close()
            self.streamer._forget(self)


class LogStreamer:
    """Opens container log streams through the reconciler's runtime adapter."""

    def __init__(
        self,
        reconciler: "Reconciler",
        *,
        tail: int | None = None,
        max_bytes: int | None = None,
        follow_max_s: float | None = None,
        backlog_lines: int | None = None,
    ):
        self.reconciler = reconciler
        self.tail = tail if tail is not None else settings.log_tail
        self.max_bytes = max_bytes if max_bytes is not None else settings.log_max_bytes
        self.follow_max_s = follow_max_s if follow_max_s is not None else settings.log_follow_max_s
        self.backlog_lines = backlog_lines if backlog_lines is not None else settings.log_backlog_lines
        self._lock = Lock()
        self._broadcasts: dict[str, _Broadcast] = {}

    def open(self, ref: str, follow: bool = False) -> Iterator[str]:
        """Lines of a container's log.

        Non-follow: a finite iterator over the retained tail; every call
        re-reads it from the start. Follow: a Subscription that ends when the
        container stops, the follow lifetime elapses, or it is closed.
        """
        target = self.reconciler.resolve(ref, "logs")
        if not follow:
            return iter(self.reconciler.fetch_logs(target.id, tail=self.tail))
        return self._subscribe(target)

    def _subscribe(self, target: ObservedContainer) -> Subscription:
        with self._lock:
            b = self._broadcasts.get(target.name)
            sub = b.subscribe() if b else None
        if sub is not None:
            return sub

        handle = self.reconciler.follow_logs(target.id, tail=self.tail)
        with self._lock:
            b = self._broadcasts.get(target.name)
            sub = b.subscribe() if b else None
            if sub is None:
                fresh = _Broadcast(self, target.name, handle, self.follow_max_s, self.backlog_lines)
                self._broadcasts[target.name] = fresh
                first = fresh._attach()
                fresh.start()
                return first
        # Lost the race to another reader; share its stream.
        handle.close()
        return sub

    def snapshot(self, ref: str) -> tuple[ObservedContainer, str]:
        """Point-in-time log text, trimmed to the newest ``max_bytes``."""
        target = self.reconciler.resolve(ref, "logs")
        text = "\n".join(self.reconciler.fetch_logs(target.id, tail=self.tail))
        raw = text.encode("utf-8")
        if len(raw) > self.max_bytes:
            text = raw[-self.max_bytes :].decode("utf-8", errors="ignore")
        return target, text

    def active(self) -> dict[str, int]:
        with self._lock:
            return {name: len(b.subscribers) for name, b in self._broadcasts.items()}

    def _forget(self, b: _Broadcast) -> None:
        with self._lock:
            if self._broadcasts.get(b.name) is b:
                del self._broadcasts[b.name]

    def close_all(self) -> None:
        with self._lock:
            broadcasts = list(self._broadcasts.values())
            self._broadcasts.clear()
        for b in broadcasts:
            b.close()
