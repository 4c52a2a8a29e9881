from __future__ import annotations
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load .env early (no error if missing)
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else None


@dataclass(frozen=True)
class Settings:
    # Simulator side: commands are POSTed to {protocol}://{ot_host}:{port_ot}/otd
    ot_host: str = os.getenv("OTCOORD_OT_HOST", "localhost")
    port_ot: int = int(os.getenv("OTCOORD_PORT_OT", "9002"))
    protocol: str = os.getenv("OTCOORD_PROTOCOL", "http")
    # Our side: the simulator POSTs events to {app_host}:{port_app}
    app_host: str = os.getenv("OTCOORD_APP_HOST", "0.0.0.0")
    port_app: int = int(os.getenv("OTCOORD_PORT_APP", "9004"))
    request_timeout: float = float(os.getenv("OTCOORD_REQUEST_TIMEOUT", "5"))
    max_simultaneous_requests: int = int(os.getenv("OTCOORD_MAX_SIMULTANEOUS_REQUESTS", "1"))
    position_report_frequency: float = float(os.getenv("OTCOORD_POSITION_REPORT_FREQUENCY", "1"))

    # Retry/resilience
    max_attempts: int = int(os.getenv("OTCOORD_MAX_ATTEMPTS", "5"))
    cooldown: float = float(os.getenv("OTCOORD_COOLDOWN", "2"))
    port_wait_timeout: float = float(os.getenv("OTCOORD_PORT_WAIT_TIMEOUT", "120"))

    # Simulator process (optional; without a binary the simulator is started by hand)
    ot_binary: str | None = os.getenv("OTCOORD_OT_BINARY")
    ot_args: tuple[str, ...] = field(default_factory=lambda: tuple(os.getenv("OTCOORD_OT_ARGS", "-otd").split()))
    ot_log: str | None = os.getenv("OTCOORD_OT_LOG")

    # Run control
    end_time: float | None = _env_float("OTCOORD_END_TIME")
    delay_scenario_first: int | None = None
    delay_scenario_last: int | None = None
    stop_file: str | None = os.getenv("OTCOORD_STOP_FILE")
    pause_before_each_run: bool = _env_bool("OTCOORD_PAUSE_BEFORE_EACH_RUN", False)
    pause_after_each_run: bool = _env_bool("OTCOORD_PAUSE_AFTER_EACH_RUN", False)
    pause_with_stuck_trains: bool = _env_bool("OTCOORD_PAUSE_WITH_STUCK_TRAINS", False)
    # Re-allow a route once the simulator reports it reserved (works around a simulator quirk)
    allow_reserved_routes: bool = _env_bool("OTCOORD_ALLOW_RESERVED_ROUTES", True)

    # Logging
    communication_log: str | None = os.getenv("OTCOORD_COMMUNICATION_LOG")
    log_level: str = os.getenv("OTCOORD_LOG_LEVEL", "INFO").upper()
    log_file: str | None = os.getenv("OTCOORD_LOG_FILE")

    @property
    def ot_url(self) -> str:
        return f"{self.protocol}://{self.ot_host}:{self.port_ot}/otd"

    @property
    def manages_simulator(self) -> bool:
        return bool(self.ot_binary)
