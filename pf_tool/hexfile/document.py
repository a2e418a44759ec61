# hexfile/document.py
"""Intel-HEX образ как упорядоченный список записей.

Индекс записи (порядок строк в файле) это основная единица адресации при
частичной прошивке: маркер, курсор потока и прогресс считаются в записях.
Редактирования здесь нет, только чтение.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import IO, Iterable, Optional, Tuple, Union

from ..errors import ChecksumMismatch, MalformedRecord, NoSegmentRecord

DATA = 0x00
END_OF_FILE = 0x01
EXTENDED_SEGMENT = 0x04

_HEX_DIGITS = re.compile(r"^[0-9A-Fa-f]+$")


@dataclass(frozen=True)
class HexRecord:
    byte_count: int
    address: int      # локальный 16-битный адрес записи
    record_type: int
    data: bytes
    checksum: int

    @property
    def hex_data(self) -> str:
        """Поле данных в виде HEX-цифр (верхний регистр), как в файле."""
        return self.data.hex().upper()

    @property
    def is_data(self) -> bool:
        return self.record_type == DATA


def record_checksum(byte_count: int, address: int, record_type: int, data: bytes) -> int:
    total = byte_count + (address >> 8) + (address & 0xFF) + record_type + sum(data)
    return (-total) & 0xFF


def parse_record(line: str, line_number: int, verify_checksum: bool = True) -> HexRecord:
    if not line.startswith(":"):
        raise MalformedRecord(line_number, "missing ':' record marker")
    body = line[1:]
    if len(body) < 10 or len(body) % 2 or not _HEX_DIGITS.match(body):
        raise MalformedRecord(line_number, "not an even run of hex digits")

    raw = bytes.fromhex(body)
    byte_count, record_type = raw[0], raw[3]
    address = (raw[1] << 8) | raw[2]
    # count + addr(2) + type + data + checksum
    if len(raw) != byte_count + 5:
        raise MalformedRecord(
            line_number, f"byte count {byte_count} does not match record length"
        )
    data = raw[4:-1]
    checksum = raw[-1]
    if record_type == EXTENDED_SEGMENT and byte_count != 2:
        raise MalformedRecord(line_number, "extended segment record must carry 2 bytes")

    if verify_checksum:
        expected = record_checksum(byte_count, address, record_type, data)
        if expected != checksum:
            raise ChecksumMismatch(line_number, expected, checksum)

    return HexRecord(byte_count, address, record_type, data, checksum)


@dataclass(frozen=True)
class HexPattern:
    """Шаблон вида «литерал, любые N hex-цифр, литерал».

    Совпадение ищется только внутри поля данных одной записи.
    """

    head: str
    gap: int
    tail: str

    def compile(self) -> "re.Pattern[str]":
        return re.compile(
            re.escape(self.head.upper()) + "[0-9A-F]{%d}" % self.gap + re.escape(self.tail.upper())
        )


class HexDocument:
    def __init__(self, records: Iterable[HexRecord]):
        self._records: Tuple[HexRecord, ...] = tuple(records)

    # ---------- Построение ----------
    @classmethod
    def parse(cls, lines: Iterable[str], verify_checksum: bool = True) -> "HexDocument":
        """Разобрать строки образа. Пустые строки пропускаются.

        Ошибки декодирования -> MalformedRecord(номер строки, с 1).
        """
        records = []
        for number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            records.append(parse_record(line, number, verify_checksum))
        return cls(records)

    # ---------- Доступ ----------
    def record_at(self, index: int) -> HexRecord:
        return self._records[index]

    def record_count(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __getitem__(self, index: int) -> HexRecord:
        return self._records[index]

    # ---------- Адреса ----------
    def segment_base(self, index: int) -> int:
        # идём назад до ближайшей записи типа 4 (включая саму index)
        for cur in range(index, -1, -1):
            rec = self._records[cur]
            if rec.record_type == EXTENDED_SEGMENT:
                return int.from_bytes(rec.data[:2], "big")
        raise NoSegmentRecord(index)

    def absolute_address(self, index: int) -> int:
        return self.segment_base(index) * 0x10000 + self._records[index].address

    # ---------- Поиск ----------
    def find(self, needle: str, start: int = 0) -> Optional[Tuple[int, int]]:
        """Первая запись, в данных которой есть needle (hex-цифры).

        Возвращает (индекс записи, смещение в hex-цифрах) или None.
        Учитываются только совпадения на границе байта.
        """
        needle = needle.upper()
        if not needle:
            return None
        for index in range(start, len(self._records)):
            text = self._records[index].hex_data
            pos = text.find(needle)
            while pos != -1 and pos % 2:
                pos = text.find(needle, pos + 1)
            if pos != -1:
                return index, pos
        return None

    def find_pattern(self, pattern: HexPattern, start: int = 0) -> Optional[Tuple[int, int]]:
        regex = pattern.compile()
        for index in range(start, len(self._records)):
            text = self._records[index].hex_data
            for match in regex.finditer(text):
                if match.start() % 2 == 0:
                    return index, match.start()
        return None


ImageSource = Union[str, PathLike, IO[str], IO[bytes], bytes]


def load_hex(source: ImageSource, verify_checksum: bool = True) -> HexDocument:
    """Прочитать образ целиком (путь, текстовый/байтовый поток или bytes)."""
    if isinstance(source, (bytes, bytearray)):
        text = bytes(source).decode("ascii", errors="replace")
    elif isinstance(source, (str, PathLike)):
        text = Path(source).read_text(encoding="ascii", errors="replace")
    else:
        raw = source.read()
        text = raw.decode("ascii", errors="replace") if isinstance(raw, bytes) else raw
    return HexDocument.parse(io.StringIO(text), verify_checksum=verify_checksum)
