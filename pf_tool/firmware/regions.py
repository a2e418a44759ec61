# firmware/regions.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable

from ..ble_transport.link import Link, NotificationHub
from ..ble_transport.packets import REGION_NAMES, encode_region_query
from ..config import DEFAULT_TIMINGS
from ..errors import RegionQueryTimeout

log = logging.getLogger(__name__)

ALL_REGIONS = (0, 1, 2)


@dataclass(frozen=True)
class RegionInfo:
    region_id: int
    start_address: int
    end_address: int
    hash: bytes

    @property
    def name(self) -> str:
        return REGION_NAMES.get(self.region_id, f"region{self.region_id}")

    def as_dict(self) -> dict:
        return {
            "region": self.region_id,
            "name": self.name,
            "start": f"0x{self.start_address:08X}",
            "end": f"0x{self.end_address:08X}",
            "hash": self.hash.hex().upper(),
        }


# Снимок карты памяти одной попытки: id региона -> RegionInfo
MemoryMap = Dict[int, RegionInfo]


class RegionMap:
    """Запросы карты памяти устройства.

    Ответы приходят уведомлениями; хаб держит последний непрочитанный.
    """

    def __init__(self, link: Link, hub: NotificationHub):
        self.link = link
        self.hub = hub

    async def query(self, region_id: int, timeout: float = DEFAULT_TIMINGS.region_timeout) -> RegionInfo:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        # сбрасываем до запроса: ответ может прийти раньше, чем начнём ждать
        self.hub.regions.clear()
        await self.link.write_command(encode_region_query(region_id))
        log.debug("requested region %d", region_id)

        while True:
            try:
                frame = await self.hub.regions.take(deadline - loop.time())
            except asyncio.TimeoutError:
                raise RegionQueryTimeout(region_id, timeout) from None
            if frame.region_id == region_id:
                return RegionInfo(frame.region_id, frame.start_address, frame.end_address, frame.hash)
            log.debug("ignoring RegionInfo for region %d while waiting for %d",
                      frame.region_id, region_id)

    async def read_memory_map(self, region_ids: Iterable[int] = ALL_REGIONS,
                              timeout: float = DEFAULT_TIMINGS.region_timeout) -> MemoryMap:
        """Опросить регионы по очереди; таймаут одного региона не фатален."""
        regions: MemoryMap = {}
        for region_id in region_ids:
            try:
                info = await self.query(region_id, timeout)
            except RegionQueryTimeout as e:
                log.warning("%s", e)
                continue
            log.info("region %d (%s): 0x%08X..0x%08X hash %s", region_id, info.name,
                     info.start_address, info.end_address, info.hash.hex().upper())
            regions[region_id] = info
        return regions
