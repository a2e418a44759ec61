from __future__ import annotations
import asyncio, json, logging, signal
from dataclasses import replace
from pathlib import Path
from datetime import datetime, timezone

import typer
from rich import print
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn

from .config import APP_NAME, DEFAULT_TIMINGS, LOG_FILE
from .errors import LinkError, ParseError, PartialFlashUnsupported, PFError
from .ble_transport.bleak_link import BleakLink, scan as ble_scan
from .firmware.engine import FlashEngine, FlashOutcome, FlashResult
from .firmware.simulate import SimMicrobit
from .hexfile.document import HexDocument, load_hex
from .hexfile.magic import MagicLocator
from .pf_tools import pf_ping

app = typer.Typer(add_completion=False, help=f"{APP_NAME}: частичная прошивка micro:bit по BLE.")

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_FALLBACK = 3


def _log_event(kind: str, payload: dict):
    LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "kind": kind,
        "payload": payload,
    }
    with open(LOG_FILE, "a", encoding="utf-8") as f:
        f.write(json.dumps(record, ensure_ascii=False) + "\n")


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


def _load(in_file: Path, verify_checksum: bool) -> HexDocument:
    if not in_file.exists():
        print(f"[red]Файл не найден:[/] {in_file}")
        raise typer.Exit(code=EXIT_USAGE)
    try:
        return load_hex(in_file, verify_checksum=verify_checksum)
    except ParseError as e:
        print(f"[red]Образ повреждён:[/] {e}")
        raise typer.Exit(code=EXIT_USAGE)


def _need_address(address: str | None, demo: bool):
    if not demo and not address:
        print("[red]Укажи BLE-адрес устройства или --demo.[/]")
        raise typer.Exit(code=EXIT_USAGE)


@app.command()
def scan(timeout: float = typer.Option(5.0, help="Время сканирования, с")):
    """Показать BLE-устройства поблизости."""
    try:
        found = asyncio.run(ble_scan(timeout))
    except LinkError as e:
        print(f"[red]Ошибка сканирования:[/] {e}")
        raise typer.Exit(code=EXIT_FAILED)
    if not found:
        print("[yellow]Устройства не найдены.[/]")
        return
    for address, name, rssi in found:
        mark = "[bold green]" if "micro:bit" in name.lower() else "[cyan]"
        print(f"{mark}{address}[/] {name or '-'} ({rssi} dBm)")


@app.command("hex-info")
def hex_info(
    in_file: Path = typer.Argument(..., help="Образ .hex"),
    verify_checksum: bool = typer.Option(True, help="Проверять контрольные суммы записей"),
):
    """
    Разобрать образ и показать, где начинается пользовательская программа.
    С устройством не связывается.
    """
    doc = _load(in_file, verify_checksum)
    location = MagicLocator(doc).locate()
    info = {"file": str(in_file), "records": doc.record_count()}
    if location is None:
        info["marker"] = None
    else:
        try:
            start = doc.absolute_address(location.start_index) + location.start_offset
        except ParseError as e:
            print(f"[red]Образ повреждён:[/] {e}")
            raise typer.Exit(code=EXIT_USAGE)
        info.update({
            "marker": location.scheme.value,
            "start_record": location.start_index,
            "start_offset": location.start_offset,
            "hash_pointer": location.hash_pointer,
            "runtime_hash": location.reference_hash.hex().upper() if location.reference_hash else None,
            "start_address": f"0x{start:08X}",
        })
    print("[bold]Образ:[/]")
    print(json.dumps(info, ensure_ascii=False, indent=2))
    if location is None:
        print("[yellow]Маркер частичной прошивки не найден: нужен полный образ (DFU).[/]")


@app.command("memory-map")
def memory_map(
    address: str = typer.Argument(None, help="BLE-адрес (или UUID на macOS)"),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
    timeout: float = typer.Option(DEFAULT_TIMINGS.region_timeout, help="Ожидание региона, с"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Безопасный запрос карты памяти (регионы 0..2). Ничего не пишет во флеш.
    """
    _need_address(address, demo)
    _setup_logging(verbose)

    async def _run():
        if demo:
            return await pf_ping(SimMicrobit(dal_hash=bytes(8), code_start=0x00030000), timeout, verbose=True)
        async with BleakLink(address) as link:
            return await pf_ping(link, timeout, verbose=True)

    try:
        regions = asyncio.run(_run())
    except PFError as e:
        print(f"[red]Ошибка связи:[/] {e}")
        raise typer.Exit(code=EXIT_FAILED)
    _log_event("memory_map", {"address": address, "demo": demo,
                              "regions": [r.as_dict() for r in regions.values()]})
    if len(regions) == 3:
        print("[bold green]Устройство ответило по всем регионам.[/]")
    else:
        print("[bold yellow]Карта памяти неполная.[/]")


@app.command()
def flash(
    in_file: Path = typer.Argument(..., help="Образ .hex с пользовательской программой"),
    address: str = typer.Argument(None, help="BLE-адрес (или UUID на macOS)"),
    demo: bool = typer.Option(False, help="Симулятор вместо реального устройства"),
    verify_checksum: bool = typer.Option(True, help="Проверять контрольные суммы записей"),
    ack_timeout: float = typer.Option(DEFAULT_TIMINGS.ack_timeout, help="Ожидание подтверждения окна, с"),
    attempt_timeout: float = typer.Option(DEFAULT_TIMINGS.attempt_timeout, help="Вся передача, с"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """
    Частичная прошивка: передаётся только пользовательская программа.
    Если рантайм на устройстве не совпадает с образом, нужен полный DFU (код 3).
    """
    _need_address(address, demo)
    _setup_logging(verbose)
    doc = _load(in_file, verify_checksum)
    timings = replace(DEFAULT_TIMINGS, ack_timeout=ack_timeout, attempt_timeout=attempt_timeout)

    async def _run(progress_cb) -> FlashOutcome:
        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: Ctrl+C прервёт сразу
        if demo:
            link = SimMicrobit.for_image(doc)
            return await FlashEngine(link, timings, progress_cb, cancel).run(doc)
        async with BleakLink(address) as link:
            return await FlashEngine(link, timings, progress_cb, cancel).run(doc)

    columns = (TextColumn("[bold]{task.description}"), BarColumn(), TextColumn("{task.completed:>3.0f}%"),
               TimeElapsedColumn())
    try:
        with Progress(*columns) as bar:
            task = bar.add_task("Прошивка", total=100)
            outcome = asyncio.run(_run(lambda pct: bar.update(task, completed=pct)))
    except PartialFlashUnsupported as e:
        print(f"[yellow]Частичная прошивка недоступна ({e}). Нужен полный образ (DFU).[/]")
        _log_event("flash", {"file": str(in_file), "result": FlashResult.FALLBACK_REQUIRED.value,
                             "reason": str(e)})
        raise typer.Exit(code=EXIT_FALLBACK)
    except ParseError as e:
        print(f"[red]Образ повреждён:[/] {e}")
        raise typer.Exit(code=EXIT_USAGE)
    except LinkError as e:
        print(f"[red]Ошибка связи:[/] {e}")
        raise typer.Exit(code=EXIT_FAILED)

    _log_event("flash", {
        "file": str(in_file), "address": address, "demo": demo,
        "result": outcome.result.value, "reason": outcome.reason,
        "packets": outcome.packets_sent, "seconds": round(outcome.elapsed, 2),
        "regions": [r.as_dict() for r in outcome.regions.values()],
    })

    if outcome.result is FlashResult.SUCCEEDED:
        print(f"[bold green]Готово:[/] {outcome.packets_sent} пакетов за {outcome.elapsed:.1f} с")
        return
    if outcome.result is FlashResult.FALLBACK_REQUIRED:
        print(f"[yellow]Нужен полный образ (DFU):[/] {outcome.reason}")
        raise typer.Exit(code=EXIT_FALLBACK)
    print(f"[red]Частичная прошивка не удалась:[/] {outcome.reason}")
    print("Переподключись и повтори попытку целиком или прошей полный образ.")
    raise typer.Exit(code=EXIT_FAILED)


if __name__ == "__main__":
    app()
