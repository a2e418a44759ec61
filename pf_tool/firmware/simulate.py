# firmware/simulate.py
from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional

from ..ble_transport.link import NotifyCallback
from ..ble_transport.packets import (
    REGION_DAL,
    REGION_MAKECODE,
    REGION_SOFTDEVICE,
    EndOfFlash,
    FlashData,
    PacketState,
    RegionInfoFrame,
    RegionQuery,
    decode_command,
    encode_flash_ack,
    encode_region_info,
)
from ..hexfile.document import HexDocument
from ..hexfile.magic import MagicLocator

WINDOW = 4


class SimMicrobit:
    """
    Симулятор устройства с сервисом частичной прошивки (он же Link):
    - отвечает на запросы регионов
    - копит окно из 4 пакетов, пишет его в «флеш» и подтверждает 0xFF
    - неполное окно пишет только по EndOfFlash (или, если задан idle_ack,
      подтверждает его после такой паузы)
    - на EndOfFlash отвечает 0xCF
    Сбои включаются параметрами: молчащие регионы, повтор окна, потеря
    подтверждений.
    """

    def __init__(self, dal_hash: bytes, code_start: int, code_end: Optional[int] = None,
                 silent_regions: Iterable[int] = (),
                 retransmit_windows: Iterable[int] = (),
                 ack_limit: Optional[int] = None,
                 complete_on_end: bool = True,
                 waiting_before_ack: bool = False,
                 idle_ack: Optional[float] = None,
                 latency: float = 0.0):
        self.regions: Dict[int, RegionInfoFrame] = {
            REGION_SOFTDEVICE: RegionInfoFrame(REGION_SOFTDEVICE, 0x00000000, 0x0001C000, bytes(8)),
            REGION_DAL: RegionInfoFrame(REGION_DAL, 0x0001C000, code_start, bytes(dal_hash)),
            REGION_MAKECODE: RegionInfoFrame(
                REGION_MAKECODE, code_start,
                code_end if code_end is not None else code_start + 0x20000, bytes(8)),
        }
        self.silent_regions = set(silent_regions)
        self.retransmit_windows = set(retransmit_windows)
        self.ack_limit = ack_limit
        self.complete_on_end = complete_on_end
        self.waiting_before_ack = waiting_before_ack
        self.idle_ack = idle_ack
        self.latency = latency

        self.flash: Dict[int, int] = {}
        self.received: List[bytes] = []    # все кадры от хоста, как есть
        self.acks_sent: List[int] = []
        self.ended = False

        self._callbacks: List[NotifyCallback] = []
        self._window: List[FlashData] = []
        self._windows_seen = 0
        self._accepted = 0                 # пакетов записано во «флеш»
        self._write_cursor = 0
        self._idle_timer: Optional[asyncio.TimerHandle] = None

    @classmethod
    def for_image(cls, document: HexDocument, **kwargs) -> "SimMicrobit":
        """Совместимое с образом устройство (для демо-режима)."""
        location = MagicLocator(document).locate()
        if location is None or location.reference_hash is None:
            return cls(dal_hash=bytes(8), code_start=0x00030000, **kwargs)
        start = document.absolute_address(location.start_index) + location.start_offset
        return cls(dal_hash=location.reference_hash, code_start=start, **kwargs)

    # ---- Link ----
    async def write_command(self, data: bytes) -> None:
        frame = bytes(data)
        self.received.append(frame)
        command = decode_command(frame)
        if isinstance(command, RegionQuery):
            self._on_region_query(command.region_id)
        elif isinstance(command, FlashData):
            self._on_flash_data(command)
        elif isinstance(command, EndOfFlash):
            self._on_end()

    def subscribe(self, callback: NotifyCallback) -> None:
        self._callbacks.append(callback)

    def unsubscribe(self, callback: NotifyCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # ---- Доступ к «флешу» ----
    def read(self, addr: int, size: int) -> bytes:
        return bytes(self.flash.get(a, 0xFF) for a in range(addr, addr + size))

    @property
    def flash_packets(self) -> List[FlashData]:
        return [c for c in map(decode_command, self.received) if isinstance(c, FlashData)]

    # ---- Протокол ----
    def _on_region_query(self, region_id: int) -> None:
        region = self.regions.get(region_id)
        if region is None or region_id in self.silent_regions:
            return
        self._notify(encode_region_info(region))

    def _on_flash_data(self, packet: FlashData) -> None:
        self._window.append(packet)
        self._cancel_idle()
        if len(self._window) == WINDOW:
            self._close_window()
        elif self.idle_ack is not None:
            loop = asyncio.get_running_loop()
            self._idle_timer = loop.call_later(self.idle_ack, self._close_window)

    def _on_end(self) -> None:
        self._cancel_idle()
        if self._window:
            self._commit(self._window)
            self._window = []
        self.ended = True
        if self.complete_on_end:
            self._ack(PacketState.COMPLETE)

    def _close_window(self) -> None:
        self._idle_timer = None
        if not self._window:
            return
        window, self._window = self._window, []
        ordinal = self._windows_seen
        self._windows_seen += 1
        if self.ack_limit is not None and ordinal >= self.ack_limit:
            return  # «завис»: окно не пишем и не подтверждаем
        if ordinal in self.retransmit_windows:
            self.retransmit_windows.discard(ordinal)
            self._ack(PacketState.RETRANSMIT)
            return
        self._commit(window)
        self._ack(PacketState.SENT)

    def _commit(self, window: List[FlashData]) -> None:
        if self._accepted == 0:
            hi = window[1].offset if len(window) > 1 else 0
            self._write_cursor = window[0].offset | (hi << 16)
        for packet in window:
            for i, b in enumerate(packet.payload):
                self.flash[self._write_cursor + i] = b
            self._write_cursor += len(packet.payload)
            self._accepted += 1

    def _ack(self, state: int) -> None:
        if self.waiting_before_ack:
            self._notify(encode_flash_ack(PacketState.WAITING))
        self.acks_sent.append(state)
        self._notify(encode_flash_ack(state))

    def _cancel_idle(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _notify(self, frame: bytes) -> None:
        loop = asyncio.get_running_loop()
        if self.latency:
            loop.call_later(self.latency, self._dispatch, frame)
        else:
            loop.call_soon(self._dispatch, frame)

    def _dispatch(self, frame: bytes) -> None:
        for callback in list(self._callbacks):
            callback(frame)
