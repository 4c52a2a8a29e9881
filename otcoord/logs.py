from __future__ import annotations
import logging
import math
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
    # uvicorn/httpx chatter is rarely useful next to simulator events
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)


def format_simulation_time(seconds: float, ms: bool = False) -> str:
    """Simulated time as `HH:MM:SS`, prefixed with the day past the first one (`2 01:00:00`)."""
    if not math.isfinite(seconds):
        return str(seconds)
    negative = seconds < 0
    total_ms = round(abs(seconds) * 1000)
    days, rest = divmod(total_ms, 86_400_000)
    hours, rest = divmod(rest, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    text = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    if ms:
        text += f".{millis:03d}"
    if days:
        text = f"{days} {text}"
    return f"-{text}" if negative else text
