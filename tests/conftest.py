"""Общие фикстуры: синтетические .hex образы с корректными контрольными суммами."""

from typing import Iterable, List

import pytest

from pf_tool.config import Timings
from pf_tool.hexfile.document import HexDocument
from pf_tool.hexfile.magic import PXT_MAGIC

SEGMENT = 0x0003
MARKER_ADDRESS = 0x0010
START_ADDRESS = SEGMENT * 0x10000 + MARKER_ADDRESS
REFERENCE_HASH = bytes.fromhex("AABBCCDD11223344")


def hex_line(address: int, record_type: int, data: bytes = b"") -> str:
    body = bytes([len(data), (address >> 8) & 0xFF, address & 0xFF, record_type]) + bytes(data)
    checksum = (-sum(body)) & 0xFF
    return ":" + (body + bytes([checksum])).hex().upper()


def segment_line(segment: int) -> str:
    return hex_line(0, 0x04, segment.to_bytes(2, "big"))


EOF_LINE = ":00000001FF"


def filler(size: int, seed: int) -> bytes:
    return bytes((seed * 31 + i * 7) & 0xFF for i in range(size))


def makecode_lines(payload_records: Iterable[bytes], reference_hash: bytes = REFERENCE_HASH,
                   segment: int = SEGMENT) -> List[str]:
    """seg, одна запись «рантайма», запись маркера (32 байта), записи программы, EOF."""
    marker = bytes.fromhex(PXT_MAGIC) + reference_hash + filler(8, 99)
    lines = [segment_line(segment), hex_line(0x0000, 0, filler(16, 1)), hex_line(MARKER_ADDRESS, 0, marker)]
    address = MARKER_ADDRESS + len(marker)
    for record in payload_records:
        lines.append(hex_line(address, 0, record))
        address += len(record)
    lines.append(EOF_LINE)
    return lines


def makecode_stream(payload_records: Iterable[bytes], reference_hash: bytes = REFERENCE_HASH) -> bytes:
    """Байты, которые должны оказаться во флеше начиная с START_ADDRESS."""
    return bytes.fromhex(PXT_MAGIC) + reference_hash + filler(8, 99) + b"".join(payload_records)


@pytest.fixture
def payload_records() -> List[bytes]:
    # маркер (2 пакета) + 3 записи по 32 байта = 8 пакетов, два полных окна
    return [filler(32, 10), filler(32, 11), filler(32, 12)]


@pytest.fixture
def makecode_doc(payload_records) -> HexDocument:
    return HexDocument.parse(makecode_lines(payload_records))


@pytest.fixture
def fast_timings() -> Timings:
    return Timings(region_timeout=0.2, ack_timeout=0.3, attempt_timeout=10.0,
                   packet_delay=0.0, drain_delay=0.0)
