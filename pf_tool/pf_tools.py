# pf_tools.py
from rich import print

from .ble_transport.link import NotificationHub
from .config import DEFAULT_TIMINGS
from .firmware.regions import ALL_REGIONS, MemoryMap, RegionMap


async def pf_ping(link, timeout: float = DEFAULT_TIMINGS.region_timeout, verbose: bool = True) -> MemoryMap:
    """
    Безопасный тест частичной прошивки:
    - Запрашивает регионы 0 (SoftDevice), 1 (DAL), 2 (MakeCode)
    - Ничего не пишет во флеш устройства
    Возвращает собранную карту памяти (может быть неполной).
    """
    with NotificationHub(link) as hub:
        regions = RegionMap(link, hub)
        result: MemoryMap = {}
        for region_id in ALL_REGIONS:
            if verbose: print(f"[cyan]>> 00 {region_id:02X}[/]")
            found = await regions.read_memory_map((region_id,), timeout)
            if region_id in found:
                result[region_id] = found[region_id]
                if verbose: print(found[region_id].as_dict())
            elif verbose:
                print(f"[yellow]Регион {region_id} не ответил за {timeout:g} с[/]")
    return result
