# ble_transport/packets.py
"""
Кадры протокола частичной прошивки поверх одной GATT-характеристики.

Команды хоста:
- RegionQuery  -> 00 <region>
- FlashData    -> 01 <offHi> <offLo> <packet#> <payload до 16 байт>
- EndOfFlash   -> 02

Уведомления устройства:
- RegionInfo   <- 00 <region> <start 4B BE> <end 4B BE> <hash 8B>
- FlashAck     <- 01 <state>
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from ..errors import MalformedFrame

REGION_INFO_COMMAND = 0x00
FLASH_COMMAND = 0x01
END_OF_FLASH_COMMAND = 0x02

REGION_SOFTDEVICE = 0
REGION_DAL = 1
REGION_MAKECODE = 2
REGION_NAMES = {REGION_SOFTDEVICE: "SoftDevice", REGION_DAL: "DAL", REGION_MAKECODE: "MakeCode"}

HASH_LENGTH = 8
MAX_PAYLOAD = 16
REGION_INFO_LENGTH = 2 + 4 + 4 + HASH_LENGTH
FLASH_HEADER_LENGTH = 4


class PacketState(IntEnum):
    WAITING = 0x00
    SENT = 0xFF
    RETRANSMIT = 0xAA
    COMPLETE = 0xCF


KNOWN_STATES = frozenset(int(s) for s in PacketState)


@dataclass(frozen=True)
class RegionQuery:
    region_id: int


@dataclass(frozen=True)
class RegionInfoFrame:
    region_id: int
    start_address: int
    end_address: int
    hash: bytes


@dataclass(frozen=True)
class FlashData:
    offset: int
    packet_number: int
    payload: bytes


@dataclass(frozen=True)
class FlashAck:
    state: int

    @property
    def known(self) -> bool:
        return self.state in KNOWN_STATES


@dataclass(frozen=True)
class EndOfFlash:
    pass


Outbound = Union[RegionQuery, FlashData, EndOfFlash]
Notification = Union[RegionInfoFrame, FlashAck]


# ---- Кодирование ----
def encode_region_query(region_id: int) -> bytes:
    if not 0 <= region_id <= 0xFF:
        raise ValueError("region id must be 0..255")
    return bytes([REGION_INFO_COMMAND, region_id])


def encode_flash_data(offset: int, packet_number: int, payload: bytes) -> bytes:
    if not 0 <= offset <= 0xFFFF:
        raise ValueError("offset must fit in 16 bits")
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"payload is {len(payload)} bytes, max {MAX_PAYLOAD}")
    return bytes([FLASH_COMMAND, (offset >> 8) & 0xFF, offset & 0xFF, packet_number & 0xFF]) + bytes(payload)


def encode_end_of_flash() -> bytes:
    return bytes([END_OF_FLASH_COMMAND])


def encode_region_info(info: RegionInfoFrame) -> bytes:
    if len(info.hash) != HASH_LENGTH:
        raise ValueError("region hash must be 8 bytes")
    return (
        bytes([REGION_INFO_COMMAND, info.region_id])
        + info.start_address.to_bytes(4, "big")
        + info.end_address.to_bytes(4, "big")
        + bytes(info.hash)
    )


def encode_flash_ack(state: int) -> bytes:
    return bytes([FLASH_COMMAND, state & 0xFF])


def encode(message: Union[Outbound, Notification]) -> bytes:
    if isinstance(message, RegionQuery):
        return encode_region_query(message.region_id)
    if isinstance(message, FlashData):
        return encode_flash_data(message.offset, message.packet_number, message.payload)
    if isinstance(message, EndOfFlash):
        return encode_end_of_flash()
    if isinstance(message, RegionInfoFrame):
        return encode_region_info(message)
    if isinstance(message, FlashAck):
        return encode_flash_ack(message.state)
    raise TypeError(f"unsupported message {message!r}")


# ---- Декодирование уведомлений ----
def decode_region_info(frame: bytes) -> RegionInfoFrame:
    if len(frame) < REGION_INFO_LENGTH:
        raise MalformedFrame(frame, f"RegionInfo needs {REGION_INFO_LENGTH} bytes")
    if frame[0] != REGION_INFO_COMMAND:
        raise MalformedFrame(frame, "not a RegionInfo frame")
    return RegionInfoFrame(
        region_id=frame[1],
        start_address=int.from_bytes(frame[2:6], "big"),
        end_address=int.from_bytes(frame[6:10], "big"),
        hash=bytes(frame[10:18]),
    )


def decode_flash_ack(frame: bytes) -> FlashAck:
    if len(frame) < 2:
        raise MalformedFrame(frame, "FlashAck needs 2 bytes")
    if frame[0] != FLASH_COMMAND:
        raise MalformedFrame(frame, "not a FlashAck frame")
    return FlashAck(frame[1])


def decode_notification(frame: bytes) -> Notification:
    if not frame:
        raise MalformedFrame(frame, "empty notification")
    if frame[0] == REGION_INFO_COMMAND:
        return decode_region_info(frame)
    if frame[0] == FLASH_COMMAND:
        return decode_flash_ack(frame)
    raise MalformedFrame(frame, f"unknown notification 0x{frame[0]:02X}")


# ---- Декодирование команд (для симулятора и логов) ----
def decode_command(frame: bytes) -> Outbound:
    if not frame:
        raise MalformedFrame(frame, "empty command")
    cmd = frame[0]
    if cmd == REGION_INFO_COMMAND:
        if len(frame) < 2:
            raise MalformedFrame(frame, "RegionQuery needs 2 bytes")
        return RegionQuery(frame[1])
    if cmd == FLASH_COMMAND:
        if len(frame) < FLASH_HEADER_LENGTH:
            raise MalformedFrame(frame, f"FlashData needs {FLASH_HEADER_LENGTH} bytes")
        if len(frame) > FLASH_HEADER_LENGTH + MAX_PAYLOAD:
            raise MalformedFrame(frame, "FlashData payload longer than 16 bytes")
        return FlashData(
            offset=(frame[1] << 8) | frame[2],
            packet_number=frame[3],
            payload=bytes(frame[4:]),
        )
    if cmd == END_OF_FLASH_COMMAND:
        return EndOfFlash()
    raise MalformedFrame(frame, f"unknown command 0x{cmd:02X}")


def decode(frame: bytes, from_device: bool = True) -> Union[Outbound, Notification]:
    """RegionQuery и RegionInfo делят байт команды, поэтому нужно направление."""
    return decode_notification(frame) if from_device else decode_command(frame)
