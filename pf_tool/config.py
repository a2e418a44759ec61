from dataclasses import dataclass
from pathlib import Path

LOG_DIR = Path(__file__).parent / "logs"
LOG_FILE = LOG_DIR / "session.jsonl"
APP_NAME = "PF CLI"

# GATT-сервис частичной прошивки (micro:bit)
PARTIAL_FLASHING_SERVICE = "e97dd91d-251d-470a-a062-fa1922dfa9a8"
PARTIAL_FLASH_CHARACTERISTIC = "e97d3b10-251d-470a-a062-fa1922dfa9a8"

CONNECT_ATTEMPTS = 3
CONNECT_TIMEOUT = 20.0


@dataclass(frozen=True)
class Timings:
    region_timeout: float = 2.0    # ожидание ответа на запрос региона
    ack_timeout: float = 5.0       # ожидание подтверждения окна из 4 пакетов
    attempt_timeout: float = 60.0  # вся передача, с момента начала потока
    packet_delay: float = 0.005    # пауза между пакетами внутри окна
    drain_delay: float = 0.1       # чтобы последняя запись успела уйти


DEFAULT_TIMINGS = Timings()
