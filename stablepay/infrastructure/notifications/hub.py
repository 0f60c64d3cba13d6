from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from stablepay.domain.models.payment_request import StatusEvent

log = logging.getLogger("payments.notify")

Listener = Callable[[StatusEvent], Awaitable[None]]


@dataclass(eq=False)
class _Subscriber:
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue


class _Subscription:
    """Async-итератор событий; завершается после терминального статуса."""

    def __init__(self, hub: "NotificationHub", request_id: str, sub: _Subscriber) -> None:
        self._hub = hub
        self._request_id = request_id
        self._sub = sub
        self._closed = False

    def __aiter__(self) -> "_Subscription":
        return self

    async def __anext__(self) -> StatusEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            event = await self._sub.queue.get()
        except BaseException:
            # отмена задачи читателя (например, клиент SSE отключился)
            self.close()
            raise
        if event.is_terminal:
            self.close()
        return event

    async def aclose(self) -> None:
        self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._hub._remove(self._request_id, self._sub)


class NotificationHub:
    """
    Раздаёт события смены статуса всем подписчикам.

    - publish() никогда не блокирует: очереди подписчиков без лимита,
      подписчики из другого event loop получают событие через call_soon_threadsafe;
    - промежуточное событие хранится, только пока по id есть подписчики;
    - терминальные события держатся в ограниченном кэше (max_terminal), поэтому
      «поздний» подписчик сразу получает финальный статус, а память не растёт;
    - listeners: фоновые async-колбэки (например, вебхук), их ошибки только логируются.
    """

    def __init__(self, max_terminal: int = 1024) -> None:
        self._subscribers: dict[str, list[_Subscriber]] = {}
        self._last: dict[str, StatusEvent] = {}
        self._terminal: OrderedDict[str, StatusEvent] = OrderedDict()
        self._max_terminal = max_terminal
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def last_event(self, request_id: str) -> StatusEvent | None:
        with self._lock:
            return self._terminal.get(request_id) or self._last.get(request_id)

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._last) + len(self._terminal)

    def subscriber_count(self, request_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(request_id, ()))

    def publish(self, request_id: str, event: StatusEvent) -> None:
        with self._lock:
            if request_id in self._terminal:
                log.warning(
                    "Drop event after terminal status id=%s status=%s", request_id, event.status.value
                )
                return
            subscribers = list(self._subscribers.get(request_id, ()))
            if event.is_terminal:
                self._last.pop(request_id, None)
                self._terminal[request_id] = event
                while len(self._terminal) > self._max_terminal:
                    self._terminal.popitem(last=False)
            elif subscribers:
                self._last[request_id] = event

        for sub in subscribers:
            self._deliver(request_id, sub, event)
        self._fire_listeners(event)

    def subscribe(self, request_id: str, current: StatusEvent | None = None) -> AsyncIterator[StatusEvent]:
        """
        Подписка регистрируется сразу при вызове (нужен запущенный event loop).
        Первым событием приходит последнее известное, иначе current.
        """
        queue: asyncio.Queue = asyncio.Queue()
        sub = _Subscriber(loop=asyncio.get_running_loop(), queue=queue)
        with self._lock:
            first = self._terminal.get(request_id) or self._last.get(request_id) or current
            if first is not None:
                queue.put_nowait(first)
            if first is None or not first.is_terminal:
                self._subscribers.setdefault(request_id, []).append(sub)
                if first is not None:
                    self._last.setdefault(request_id, first)
        return _Subscription(self, request_id, sub)

    def _remove(self, request_id: str, sub: _Subscriber) -> None:
        with self._lock:
            subs = self._subscribers.get(request_id)
            if not subs:
                return
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(request_id, None)
                self._last.pop(request_id, None)

    def _deliver(self, request_id: str, sub: _Subscriber, event: StatusEvent) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is sub.loop:
                sub.queue.put_nowait(event)
            else:
                sub.loop.call_soon_threadsafe(sub.queue.put_nowait, event)
        except RuntimeError as exc:
            # loop подписчика уже закрыт
            log.warning("Drop subscriber id=%s err=%s", request_id, exc)
            self._remove(request_id, sub)

    def _fire_listeners(self, event: StatusEvent) -> None:
        if not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("Skip listeners: no running event loop for id=%s", event.request_id)
            return
        for listener in self._listeners:
            task = loop.create_task(listener(event))
            self._tasks.add(task)
            task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Status listener failed: %r", exc)

    async def drain(self) -> None:
        """Дождаться фоновых listener-задач (для остановки приложения и тестов)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
