import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from otcoord.config import Settings
from otcoord.core.errors import ConfigurationError
from otcoord.core.infrastructure import Infrastructure, load_infrastructure
from otcoord.logs import setup_logging
from otcoord.overtaking.modules.registry import DECISION_MODULE_FACTORIES, create_decision_module
from otcoord.sim.run import SimulationRunner

DATA_DIR = Path(__file__).parent / "data"

logger = logging.getLogger("otcoord")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="otcoord", description="Coordinate overtaking in OpenTrack simulation runs")
    ap.add_argument(
        "--infrastructure",
        type=Path,
        default=DATA_DIR / "sample_infrastructure.json",
        help="JSON export of stations, routes, itineraries and trains",
    )
    ap.add_argument(
        "--module",
        action="append",
        dest="modules",
        metavar="NAME?DIR?JSON",
        help=f"decision module, repeatable (built in: {', '.join(sorted(DECISION_MODULE_FACTORIES))})",
    )
    ap.add_argument("--ot-host")
    ap.add_argument("--port-ot", type=int)
    ap.add_argument("--port-app", type=int)
    ap.add_argument("--ot-binary", help="start the simulator for every run instead of attaching to a running one")
    ap.add_argument(
        "--ot-arg",
        action="append",
        dest="ot_args",
        help="simulator argument, repeatable; dash-prefixed values need the --ot-arg=-otd form",
    )
    ap.add_argument("--ot-log")
    ap.add_argument("--end-time", type=float, help="simulated second to pause at before the end")
    ap.add_argument("--delay-scenario-first", type=int)
    ap.add_argument("--delay-scenario-last", type=int)
    ap.add_argument("--stop-file", help="stop the batch after the current delay scenario once this file exists")
    ap.add_argument("--max-attempts", type=int)
    ap.add_argument("--max-simultaneous-requests", type=int)
    ap.add_argument("--communication-log")
    ap.add_argument("--pause-before-each-run", action="store_true", default=None)
    ap.add_argument("--pause-after-each-run", action="store_true", default=None)
    ap.add_argument("--pause-with-stuck-trains", action="store_true", default=None)
    ap.add_argument("--no-allow-reserved-routes", action="store_false", dest="allow_reserved_routes", default=None)
    ap.add_argument("--runs", type=int, help="number of simulations to coordinate when attached (default: forever)")
    ap.add_argument("--log-level")
    ap.add_argument("--log-file")
    return ap


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    settings = base or Settings()
    overrides = {
        name: getattr(args, name)
        for name in (
            "ot_host",
            "port_ot",
            "port_app",
            "ot_binary",
            "ot_log",
            "end_time",
            "delay_scenario_first",
            "delay_scenario_last",
            "stop_file",
            "max_attempts",
            "max_simultaneous_requests",
            "communication_log",
            "pause_before_each_run",
            "pause_after_each_run",
            "pause_with_stuck_trains",
            "allow_reserved_routes",
            "log_level",
            "log_file",
        )
        if getattr(args, name) is not None
    }
    if args.ot_args:
        overrides["ot_args"] = tuple(args.ot_args)
    return replace(settings, **overrides)


def describe(infrastructure: Infrastructure) -> str:
    trains = list(infrastructure.trains.values())
    lines = ["Infrastructure:"]
    if trains:
        lines.append(
            f"  {len(trains)} trains ({min(t.length for t in trains):g} m shortest, "
            f"{max(t.length for t in trains):g} m longest, {min(t.max_speed for t in trains):g} km/h slowest, "
            f"{max(t.max_speed for t in trains):g} km/h fastest),"
        )
    lines += [
        f"  {len(infrastructure.itineraries)} itineraries ({len(infrastructure.main_itineraries)} used as main itineraries),",
        f"  {len(infrastructure.routes)} routes ({sum(r.length for r in infrastructure.routes.values()) / 1000:g} km),",
        f"  {len(infrastructure.stations)} stations,",
        f"  {len(infrastructure.timetables)} timetables.",
    ]
    return "\n".join(lines)


async def run(settings: Settings, infrastructure: Infrastructure, module_confs: List[str], runs: Optional[int]) -> None:
    modules = [create_decision_module(conf) for conf in module_confs]
    runner = SimulationRunner(settings, infrastructure)
    if settings.manages_simulator:
        finished = await runner.run_batch(modules)
        logger.info(f"Finished {finished} runs.")
    else:
        if len(modules) > 1:
            raise ConfigurationError("There can be only one module without a simulator binary.")
        await runner.run_attached(modules[0], runs)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    setup_logging(settings.log_level, settings.log_file)
    try:
        infrastructure = load_infrastructure(args.infrastructure)
        logger.info(describe(infrastructure))
        asyncio.run(run(settings, infrastructure, args.modules or ["do-nothing"], args.runs))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        return 1
    except Exception:
        logger.exception("An error bubbled all the way up, giving up.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
