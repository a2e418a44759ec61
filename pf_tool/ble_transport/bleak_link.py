from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from ..config import (
    CONNECT_ATTEMPTS,
    CONNECT_TIMEOUT,
    PARTIAL_FLASH_CHARACTERISTIC,
    PARTIAL_FLASHING_SERVICE,
)
from ..errors import LinkError, PartialFlashUnsupported
from .link import NotifyCallback

log = logging.getLogger(__name__)


class BleakLink:
    """
    Link поверх bleak: характеристика частичной прошивки micro:bit.
    Запись без ответа, уведомления пересылаются подписчикам в event loop.
    """

    def __init__(self, address: str, timeout: float = CONNECT_TIMEOUT,
                 characteristic: str = PARTIAL_FLASH_CHARACTERISTIC):
        self.address = address
        self.timeout = timeout
        self.characteristic = characteristic
        self.client: Optional[BleakClient] = None
        self._callbacks: List[NotifyCallback] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ---- Подключение ----
    async def connect(self, attempts: int = CONNECT_ATTEMPTS) -> "BleakLink":
        self._loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            client = BleakClient(self.address, timeout=self.timeout)
            try:
                await client.connect()
            except (BleakError, OSError, asyncio.TimeoutError) as e:
                log.warning("connect attempt %d/%d failed: %s", attempt, attempts, e)
                last_error = e
                continue
            self.client = client
            break
        else:
            raise LinkError(f"cannot connect to {self.address}: {last_error}")

        try:
            self._check_service()
            await self.client.start_notify(self.characteristic, self._on_notify)
        except PartialFlashUnsupported:
            await self.close()
            raise
        except (BleakError, OSError) as e:
            await self.close()
            raise LinkError(f"cannot enable notifications: {e}") from e
        log.info("connected to %s", self.address)
        return self

    def _check_service(self) -> None:
        service = self.client.services.get_service(PARTIAL_FLASHING_SERVICE)
        if service is None:
            raise PartialFlashUnsupported("partial flashing service not found")
        if service.get_characteristic(self.characteristic) is None:
            raise PartialFlashUnsupported("partial flashing characteristic not found")

    async def close(self) -> None:
        client, self.client = self.client, None
        if client is None or not client.is_connected:
            return
        try:
            await client.stop_notify(self.characteristic)
        except (BleakError, OSError) as e:
            log.debug("stop_notify failed: %s", e)
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            log.debug("disconnect failed: %s", e)

    async def __aenter__(self) -> "BleakLink":
        return await self.connect()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---- Link ----
    async def write_command(self, data: bytes) -> None:
        if self.client is None or not self.client.is_connected:
            raise LinkError("not connected")
        try:
            await self.client.write_gatt_char(self.characteristic, bytes(data), response=False)
        except (BleakError, OSError) as e:
            raise LinkError(f"write failed: {e}") from e

    def subscribe(self, callback: NotifyCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: NotifyCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _on_notify(self, _sender, data: bytearray) -> None:
        # на некоторых бэкендах bleak зовёт колбэк из своего потока
        frame = bytes(data)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._dispatch, frame)
        else:
            self._dispatch(frame)

    def _dispatch(self, frame: bytes) -> None:
        for callback in list(self._callbacks):
            callback(frame)


async def scan(timeout: float = 5.0) -> list:
    """Список (address, name, rssi) найденных BLE-устройств."""
    try:
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except (BleakError, OSError) as e:
        raise LinkError(f"scan failed: {e}") from e
    result = []
    for device, adv in found.values():
        result.append((device.address, device.name or adv.local_name or "", adv.rssi))
    result.sort(key=lambda item: item[2], reverse=True)
    return result
