"""Исключения pf_tool.

Иерархия плоская: всё, что может вылететь из библиотеки, наследуется от
PFError. Движок прошивки превращает ошибки протокола и транспорта в
FlashResult.FAILED, парсер образа бросает ParseError ещё до обмена с
устройством.
"""

from __future__ import annotations


class PFError(Exception):
    """Базовое исключение частичной прошивки."""


# ---- Образ (.hex) ----
class ParseError(PFError):
    pass


class MalformedRecord(ParseError):
    def __init__(self, line_number: int, reason: str = "cannot decode record"):
        self.line_number = line_number
        self.reason = reason
        super().__init__(f"line {line_number}: {reason}")


class ChecksumMismatch(MalformedRecord):
    def __init__(self, line_number: int, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            line_number,
            f"checksum 0x{actual:02X} != expected 0x{expected:02X}",
        )


class NoSegmentRecord(ParseError):
    """Перед записью нет ни одной записи типа 4 (адрес сегмента)."""

    def __init__(self, index: int):
        self.index = index
        super().__init__(f"no extended segment record at or before record {index}")


# ---- Протокол ----
class MalformedFrame(PFError):
    def __init__(self, frame: bytes, reason: str):
        self.frame = bytes(frame)
        super().__init__(f"{reason}: {self.frame.hex().upper() or '<empty>'}")


class PFTimeout(PFError):
    pass


class RegionQueryTimeout(PFTimeout):
    def __init__(self, region_id: int, timeout: float):
        self.region_id = region_id
        super().__init__(f"no RegionInfo for region {region_id} within {timeout:g}s")


class AckTimeout(PFTimeout):
    def __init__(self, timeout: float):
        super().__init__(f"no flash acknowledgement within {timeout:g}s")


# ---- Транспорт ----
class LinkError(PFError):
    pass


class PartialFlashUnsupported(LinkError):
    """У устройства нет сервиса/характеристики частичной прошивки."""
