# ble_transport/link.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from ..errors import MalformedFrame
from .packets import (
    FLASH_COMMAND,
    REGION_INFO_COMMAND,
    FlashAck,
    RegionInfoFrame,
    decode_notification,
)

log = logging.getLogger(__name__)

NotifyCallback = Callable[[bytes], None]


# ---- Транспорт, с которым работает движок ----
class Link(Protocol):
    """Уже подключённое устройство: запись без ответа + уведомления.

    Колбэки вызываются в потоке event loop (так делает bleak).
    """

    async def write_command(self, data: bytes) -> None: ...
    def subscribe(self, callback: NotifyCallback) -> None: ...
    def unsubscribe(self, callback: NotifyCallback) -> None: ...


class NotificationLatch:
    """Последнее непрочитанное уведомление одного класса.

    Значение, пришедшее до того, как кто-то начал ждать, не теряется:
    оно лежит здесь, пока его не заберут или не сбросят.
    """

    def __init__(self) -> None:
        self._value: Any = None
        self._event = asyncio.Event()

    def put(self, value: Any) -> None:
        self._value = value
        self._event.set()

    def clear(self) -> None:
        self._value = None
        self._event.clear()

    @property
    def pending(self) -> bool:
        return self._event.is_set()

    def take_nowait(self) -> Any:
        if not self._event.is_set():
            return None
        return self._consume()

    async def take(self, timeout: float) -> Any:
        """Дождаться значения; asyncio.TimeoutError по истечении timeout."""
        if not self._event.is_set():
            await asyncio.wait_for(self._event.wait(), max(timeout, 0.0))
        return self._consume()

    def _consume(self) -> Any:
        value = self._value
        self.clear()
        if isinstance(value, Exception):
            raise value
        return value


class NotificationHub:
    """Разбирает уведомления линка и раскладывает их по защёлкам."""

    def __init__(self, link: Link):
        self.link = link
        self.regions = NotificationLatch()
        self.acks = NotificationLatch()
        self._subscribed = False

    def __enter__(self) -> "NotificationHub":
        self.link.subscribe(self.feed)
        self._subscribed = True
        return self

    def __exit__(self, *exc) -> None:
        if self._subscribed:
            self.link.unsubscribe(self.feed)
            self._subscribed = False

    def feed(self, frame: bytes) -> None:
        frame = bytes(frame)
        log.debug("notify %s", frame.hex().upper())
        try:
            message = decode_notification(frame)
        except MalformedFrame as e:
            latch = self._latch_for(frame[0] if frame else None)
            if latch is None:
                log.warning("dropping notification: %s", e)
            else:
                # рассинхронизация: ожидающий получит исключение
                latch.put(e)
            return

        if isinstance(message, RegionInfoFrame):
            self.regions.put(message)
        elif isinstance(message, FlashAck):
            self.acks.put(message)

    def _latch_for(self, command: Optional[int]) -> Optional[NotificationLatch]:
        if command == REGION_INFO_COMMAND:
            return self.regions
        if command == FLASH_COMMAND:
            return self.acks
        return None
