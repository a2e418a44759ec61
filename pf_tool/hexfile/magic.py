# hexfile/magic.py
"""Поиск маркера частичной прошивки в образе.

Сборщики (MakeCode, MicroPython) кладут в образ фиксированный маркер, за
которым (или перед которым) лежит хэш совместимого рантайма (DAL).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .document import HexDocument, HexPattern

log = logging.getLogger(__name__)

PXT_MAGIC = "708E3B92C615A841C49866C975EE5197"
UPY_MAGIC = HexPattern(head="FE307F59", gap=16, tail="9DD7B1C1")

HASH_DIGITS = 16          # 8 байт
DOUBLE_RECORD_DIGITS = 64  # запись на 32 байта
UPY_LOOKBACK = 3          # метаданные MicroPython лежат за 3 записи до маркера


class MagicScheme(str, Enum):
    MAKECODE = "makecode"        # пользовательская программа, маркер в начале
    MICROPYTHON = "micropython"


@dataclass(frozen=True)
class MagicLocation:
    start_index: int               # первая запись потока
    start_offset: int              # смещение в байтах внутри этой записи
    reference_hash: Optional[bytes]
    scheme: MagicScheme
    hash_pointer: bool = False     # хэш задан указателем, не поддерживается

    @property
    def user_program(self) -> bool:
        return self.scheme is MagicScheme.MAKECODE


class MagicLocator:
    def __init__(self, document: HexDocument):
        self.document = document

    def locate(self) -> Optional[MagicLocation]:
        return self._locate_makecode() or self._locate_micropython()

    def _locate_makecode(self) -> Optional[MagicLocation]:
        found = self.document.find(PXT_MAGIC)
        if found is None:
            return None
        index, part = found

        text = self.document[index].hex_data
        hash_start = part + len(PXT_MAGIC)
        digits = text[hash_start:hash_start + HASH_DIGITS]
        if len(digits) < HASH_DIGITS and index + 1 < len(self.document):
            # маркер у самого конца записи: хвост хэша в следующей
            digits += self.document[index + 1].hex_data[:HASH_DIGITS - len(digits)]
        if len(digits) < HASH_DIGITS:
            log.warning("MakeCode marker at record %d has a truncated hash", index)
            return None

        log.debug("MakeCode marker at record %d, offset %d", index, part)
        return MagicLocation(
            start_index=index,
            start_offset=part // 2,
            reference_hash=bytes.fromhex(digits),
            scheme=MagicScheme.MAKECODE,
        )

    def _locate_micropython(self) -> Optional[MagicLocation]:
        found = self.document.find_pattern(UPY_MAGIC)
        if found is None:
            return None
        start = found[0] - UPY_LOOKBACK
        if start < 0:
            log.warning("MicroPython marker at record %d has no metadata before it", found[0])
            return None

        double = len(self.document[start].hex_data) == DOUBLE_RECORD_DIGITS
        offset = 32 if double else 0
        holder = start if double else start + 1
        hashes = self.document[holder].hex_data

        if len(hashes) > 3 and hashes[3] == "2":
            log.info("MicroPython image uses a hash pointer (record %d)", holder)
            return MagicLocation(start, 0, None, MagicScheme.MICROPYTHON, hash_pointer=True)

        digits = hashes[offset:offset + HASH_DIGITS]
        if len(digits) < HASH_DIGITS:
            log.warning("MicroPython hash record %d is too short", holder)
            return None

        log.debug("MicroPython marker at record %d, payload from %d", found[0], start)
        return MagicLocation(
            start_index=start,
            start_offset=0,
            reference_hash=bytes.fromhex(digits),
            scheme=MagicScheme.MICROPYTHON,
        )
