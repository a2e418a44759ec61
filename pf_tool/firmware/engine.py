# firmware/engine.py
"""Движок частичной прошивки.

Последовательность одной попытки:

    Idle -> LocatingMagic -> QueryingMemoryMap -> VerifyingHash
         -> Streaming <-> AwaitingAck -> Finishing
         -> Succeeded | FallbackRequired | Failed

FallbackRequired не ошибка, а решение: частичная прошивка неприменима,
нужен полный образ (DFU). Failed: передача началась и не завершилась;
такую сессию нельзя продолжить, только начать заново с разбора образа.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from ..ble_transport.link import Link, NotificationHub
from ..ble_transport.packets import (
    MAX_PAYLOAD,
    REGION_DAL,
    REGION_MAKECODE,
    PacketState,
    encode_end_of_flash,
    encode_flash_ack,
    encode_flash_data,
)
from ..config import DEFAULT_TIMINGS, Timings
from ..errors import AckTimeout, LinkError, MalformedFrame, PFTimeout
from ..hexfile.document import HexDocument, ImageSource, load_hex
from ..hexfile.magic import MagicLocation, MagicLocator
from .regions import MemoryMap, RegionMap

log = logging.getLogger(__name__)

WINDOW = 4  # пакетов на одно подтверждение

ProgressCallback = Callable[[int], None]


class FlashResult(str, Enum):
    SUCCEEDED = "succeeded"
    FALLBACK_REQUIRED = "fallback_required"
    FAILED = "failed"


class FlashState(Enum):
    IDLE = "idle"
    LOCATING_MAGIC = "locating_magic"
    QUERYING_MEMORY_MAP = "querying_memory_map"
    VERIFYING_HASH = "verifying_hash"
    STREAMING = "streaming"
    AWAITING_ACK = "awaiting_ack"
    FINISHING = "finishing"
    SUCCEEDED = "succeeded"
    FALLBACK_REQUIRED = "fallback_required"
    FAILED = "failed"


@dataclass
class FlashOutcome:
    result: FlashResult
    reason: str = ""
    packets_sent: int = 0
    elapsed: float = 0.0
    location: Optional[MagicLocation] = None
    regions: MemoryMap = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.result is FlashResult.SUCCEEDED


@dataclass(frozen=True)
class Cursor:
    record_index: int
    byte_offset: int


@dataclass
class FlashSession:
    magic_index: int
    magic_offset: int
    reference_hash: bytes
    payload_start_address: int
    cursor: Cursor
    total_records: int
    packet_number: int = 0        # счётчик отправленных FlashData, с повторами
    logical_packet: int = 0       # позиция пакета в потоке данных
    window_count: int = 0
    last_ack_state: int = PacketState.WAITING
    attempt_start: float = 0.0
    window_start_cursor: Optional[Cursor] = None
    window_start_logical: int = 0
    progress: int = 0


class FlashEngine:
    def __init__(self, link: Link, timings: Timings = DEFAULT_TIMINGS,
                 progress: Optional[ProgressCallback] = None,
                 cancel: Optional[asyncio.Event] = None):
        self.link = link
        self.timings = timings
        self.progress = progress
        self.cancel = cancel
        self.state = FlashState.IDLE
        self.session: Optional[FlashSession] = None
        self._outcome = FlashOutcome(FlashResult.FAILED)

    # ---------- Публичный API ----------
    async def run(self, document: HexDocument) -> FlashOutcome:
        """Одна попытка частичной прошивки.

        ParseError/NoSegmentRecord пробрасываются (до обмена с устройством),
        ошибки протокола и транспорта превращаются в FlashResult.FAILED.
        """
        self.state = FlashState.IDLE
        self.session = None
        self._outcome = FlashOutcome(FlashResult.FAILED)
        self._report(0)

        with NotificationHub(self.link) as hub:
            try:
                return await self._run(document, hub)
            except (PFTimeout, MalformedFrame, LinkError) as e:
                return self._fail(str(e))

    # ---------- Этапы ----------
    async def _run(self, document: HexDocument, hub: NotificationHub) -> FlashOutcome:
        self._enter(FlashState.LOCATING_MAGIC)
        location = MagicLocator(document).locate()
        self._outcome.location = location
        if location is None:
            return self._fallback("no partial flashing marker in image")
        if location.hash_pointer:
            return self._fallback("image stores the runtime hash by pointer (unsupported)")
        start_address = document.absolute_address(location.start_index) + location.start_offset

        self._enter(FlashState.QUERYING_MEMORY_MAP)
        regions = await RegionMap(self.link, hub).read_memory_map(timeout=self.timings.region_timeout)
        self._outcome.regions = regions

        self._enter(FlashState.VERIFYING_HASH)
        reason = self._verify(location, regions, start_address)
        if reason:
            return self._fallback(reason)

        cursor = _normalize(document, Cursor(location.start_index, location.start_offset))
        self.session = FlashSession(
            magic_index=location.start_index,
            magic_offset=location.start_offset,
            reference_hash=location.reference_hash,
            payload_start_address=start_address,
            cursor=cursor,
            total_records=max(_payload_end(document, location.start_index) - location.start_index, 1),
        )
        log.info("streaming from record %d (+%d) to 0x%08X",
                 location.start_index, location.start_offset, start_address)
        return await self._stream(document, self.session, hub)

    def _verify(self, location: MagicLocation, regions: MemoryMap, start_address: int) -> str:
        dal = regions.get(REGION_DAL)
        if dal is None:
            return "device did not report the runtime (DAL) region"
        if dal.hash != location.reference_hash:
            log.info("runtime hash mismatch: image %s, device %s",
                     location.reference_hash.hex().upper(), dal.hash.hex().upper())
            return "runtime hash mismatch"
        if location.user_program:
            code = regions.get(REGION_MAKECODE)
            if code is None or code.start_address == 0 or code.end_address <= code.start_address:
                return "device did not report a usable user program region"
            if code.start_address != start_address:
                log.info("code start 0x%08X, image payload at 0x%08X", code.start_address, start_address)
                return "user program start address mismatch"
        return ""

    async def _stream(self, document: HexDocument, s: FlashSession, hub: NotificationHub) -> FlashOutcome:
        loop = asyncio.get_running_loop()
        self._enter(FlashState.STREAMING)
        s.attempt_start = loop.time()

        while True:
            if loop.time() - s.attempt_start > self.timings.attempt_timeout:
                return self._fail("partial flashing timed out")

            if s.window_count == 0:
                # отмена только между окнами: запись на устройстве не рвётся посередине
                if self.cancel is not None and self.cancel.is_set():
                    return self._fail("cancelled")
                s.window_start_cursor = s.cursor
                s.window_start_logical = s.logical_packet
                hub.acks.clear()

            chunk = _next_chunk(document, s.cursor)
            if chunk is None:
                if s.window_count and await self._short_window_rejected(s, hub):
                    continue
                break
            payload, next_cursor = chunk

            await self.link.write_command(encode_flash_data(self._offset_field(s), s.packet_number, payload))
            log.debug("packet %d (#%d) record %d+%d: %s", s.packet_number, s.logical_packet,
                      s.cursor.record_index, s.cursor.byte_offset, payload.hex().upper())
            s.packet_number += 1
            s.logical_packet += 1
            self._outcome.packets_sent += 1
            s.cursor = next_cursor
            s.window_count = (s.window_count + 1) % WINDOW

            if s.window_count == 0:
                state = await self._await_ack(s, hub)
                if state == PacketState.RETRANSMIT:
                    self._rewind(s)
                self._report_window(s)
            else:
                await asyncio.sleep(self.timings.packet_delay)

        return await self._finish(s, hub)

    async def _short_window_rejected(self, s: FlashSession, hub: NotificationHub) -> bool:
        """Хвост короче 4 пакетов: устройство подтверждает его только по EndOfFlash.

        Подтверждение, успевшее прийти за паузу, всё же учитываем.
        """
        await asyncio.sleep(self.timings.drain_delay)
        s.window_count = 0
        ack = hub.acks.take_nowait()
        if ack is not None:
            if not ack.known:
                raise MalformedFrame(encode_flash_ack(ack.state), "unknown ack state")
            if ack.state != PacketState.WAITING:
                s.last_ack_state = ack.state
        rejected = ack is not None and ack.state == PacketState.RETRANSMIT
        if rejected:
            self._rewind(s)
        self._report_window(s)
        return rejected

    def _rewind(self, s: FlashSession) -> None:
        log.info("device requested retransmit from record %d", s.window_start_cursor.record_index)
        s.window_count = 0
        s.cursor = s.window_start_cursor
        s.logical_packet = s.window_start_logical

    async def _await_ack(self, s: FlashSession, hub: NotificationHub) -> int:
        self._enter(FlashState.AWAITING_ACK)
        state = await self._next_ack(hub, self.timings.ack_timeout)
        s.last_ack_state = state
        self._enter(FlashState.STREAMING)
        return state

    async def _next_ack(self, hub: NotificationHub, timeout: float) -> int:
        """Первое подтверждение с состоянием, отличным от WAITING."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                ack = await hub.acks.take(deadline - loop.time())
            except asyncio.TimeoutError:
                raise AckTimeout(timeout) from None
            if not ack.known:
                raise MalformedFrame(encode_flash_ack(ack.state), "unknown ack state")
            if ack.state != PacketState.WAITING:
                return ack.state

    async def _finish(self, s: FlashSession, hub: NotificationHub) -> FlashOutcome:
        loop = asyncio.get_running_loop()
        self._enter(FlashState.FINISHING)
        await asyncio.sleep(self.timings.drain_delay)
        if s.last_ack_state != PacketState.COMPLETE:
            hub.acks.clear()
        await self.link.write_command(encode_end_of_flash())
        await asyncio.sleep(self.timings.drain_delay)

        deadline = loop.time() + self.timings.ack_timeout
        while s.last_ack_state != PacketState.COMPLETE:
            try:
                s.last_ack_state = await self._next_ack(hub, deadline - loop.time())
            except AckTimeout:
                return self._fail("device did not confirm the end of flash")
            if s.last_ack_state == PacketState.RETRANSMIT:
                return self._fail("device requested a retransmit after the end of flash")

        self._outcome.elapsed = loop.time() - s.attempt_start
        log.info("flash time: %.2f seconds, %d packets", self._outcome.elapsed, self._outcome.packets_sent)
        self._report(100)
        self._enter(FlashState.SUCCEEDED)
        self._outcome.result = FlashResult.SUCCEEDED
        return self._outcome

    # ---------- Вспомогательное ----------
    @staticmethod
    def _offset_field(s: FlashSession) -> int:
        # адрес записи едет только в первых двух пакетах потока
        if s.logical_packet == 0:
            return s.payload_start_address & 0xFFFF
        if s.logical_packet == 1:
            return (s.payload_start_address >> 16) & 0xFFFF
        return 0

    def _report_window(self, s: FlashSession) -> None:
        consumed = s.cursor.record_index - s.magic_index
        percent = min(99, round(100 * consumed / s.total_records))
        s.progress = max(s.progress, percent)
        self._report(s.progress)

    def _report(self, percent: int) -> None:
        if self.progress is not None:
            self.progress(percent)

    def _enter(self, state: FlashState) -> None:
        log.debug("%s -> %s", self.state.value, state.value)
        self.state = state

    def _fallback(self, reason: str) -> FlashOutcome:
        log.info("fallback required: %s", reason)
        self._enter(FlashState.FALLBACK_REQUIRED)
        self._outcome.result = FlashResult.FALLBACK_REQUIRED
        self._outcome.reason = reason
        return self._outcome

    def _fail(self, reason: str) -> FlashOutcome:
        log.warning("partial flashing failed in %s: %s", self.state.value, reason)
        self._enter(FlashState.FAILED)
        self._outcome.result = FlashResult.FAILED
        self._outcome.reason = reason
        return self._outcome


# ---- Курсор по записям данных ----
def _normalize(document: HexDocument, cursor: Cursor) -> Cursor:
    index, offset = cursor.record_index, cursor.byte_offset
    while index < len(document):
        rec = document[index]
        if not rec.is_data or offset < len(rec.data):
            break
        # запись дочитана (или пустая), к следующей
        index, offset = index + 1, 0
    return Cursor(index, offset)


def _payload_end(document: HexDocument, start: int) -> int:
    """Индекс первой записи не-данных начиная со start (конец полезной нагрузки)."""
    index = start
    while index < len(document) and document[index].is_data:
        index += 1
    return index


def _at_end(document: HexDocument, cursor: Cursor) -> bool:
    return cursor.record_index >= len(document) or not document[cursor.record_index].is_data


def _next_chunk(document: HexDocument, cursor: Cursor):
    """(до 16 байт одной записи, курсор после них) или None в конце данных."""
    if _at_end(document, cursor):
        return None
    rec = document[cursor.record_index]
    payload = rec.data[cursor.byte_offset:cursor.byte_offset + MAX_PAYLOAD]
    return payload, _normalize(document, Cursor(cursor.record_index, cursor.byte_offset + len(payload)))


async def partial_flash(source: ImageSource, link: Link, timings: Timings = DEFAULT_TIMINGS,
                        progress: Optional[ProgressCallback] = None,
                        cancel: Optional[asyncio.Event] = None,
                        verify_checksum: bool = True) -> FlashOutcome:
    """Прочитать образ и выполнить одну попытку. ParseError бросается до связи с устройством."""
    document = load_hex(source, verify_checksum=verify_checksum)
    return await FlashEngine(link, timings, progress, cancel).run(document)
