"""paneherd command line.

  paneherd run     run the pane daemon until a signal or controller loss
  paneherd reap    one-shot global reap of idle servers and zombie panes
  paneherd layout  print the dynamic layout string for a synthetic window
  paneherd panes   list tmux panes tagged with a session id
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from paneherd import __version__
from paneherd.config import PaneherdConfig, ReaperConfig, load_config
from paneherd.constants import PANE_SESSION_TAG
from paneherd.core.layout import distribute, render_layout
from paneherd.core.tmux_bridge import TmuxBridge
from paneherd.core.zombie_reaper import ReapReport, ZombieReaper
from paneherd.daemon import run_daemon
from paneherd.logging_config import setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paneherd", description="tmux panes for background agent sessions.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the pane daemon")
    run.add_argument("--config", type=Path, default=None, help="Config file (default: search order)")
    run.add_argument("--server-url", default=None, help="Controller base URL (default: from OPENCODE_PORT)")
    run.add_argument("--log-level", default=None, help="Log level (default: PANEHERD_LOG_LEVEL or INFO)")

    reap = subparsers.add_parser("reap", help="Kill idle servers and zombie attach processes once")
    reap.add_argument("--config", type=Path, default=None, help="Config file (default: search order)")
    reap.add_argument("--max-ports", type=int, default=None, help="Ports to scan above 4096")

    layout = subparsers.add_parser("layout", help="Print a dynamic layout string")
    layout.add_argument("--width", type=int, required=True)
    layout.add_argument("--height", type=int, required=True)
    layout.add_argument("--agents", type=int, required=True, help="Number of satellite panes")
    layout.add_argument("--max-per-column", type=int, default=3)
    layout.add_argument("--main-pane-percent", type=int, default=None)

    subparsers.add_parser("panes", help="List panes tagged with a session id")
    return parser


def _load(path: Optional[Path]) -> Optional[PaneherdConfig]:
    try:
        return load_config(path)
    except ValidationError as e:
        print(f"Error: invalid configuration:\n{e}", file=sys.stderr)
        return None


def _cmd_run(args: argparse.Namespace) -> int:
    setup_logging(level=args.log_level)
    config = _load(args.config)
    if config is None:
        return 1
    return asyncio.run(run_daemon(config, server_url=args.server_url))


def format_report(report: ReapReport) -> str:
    return (
        f"Reap complete: {report.servers_killed} server(s) and {report.zombies_killed} zombie(s) killed, "
        f"{report.skipped_servers} busy server(s) and {report.skipped_processes} unknown process(es) skipped."
    )


def _cmd_reap(args: argparse.Namespace) -> int:
    setup_logging()
    config = _load(args.config)
    if config is None:
        return 1
    reaper_config = config.reaper
    if args.max_ports is not None:
        try:
            reaper_config = ReaperConfig.model_validate({**reaper_config.model_dump(), "max_ports": args.max_ports})
        except ValidationError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    report = asyncio.run(ZombieReaper.reap_all(reaper_config))
    print(format_report(report))
    return 0


def _cmd_layout(args: argparse.Namespace) -> int:
    pane_ids = [f"%{index}" for index in range(1, args.agents + 1)]
    try:
        layout = render_layout(
            args.width,
            args.height,
            "%0",
            pane_ids,
            args.max_per_column,
            main_pane_percent=args.main_pane_percent,
        )
        sizes = distribute(args.agents, args.max_per_column).column_sizes
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(layout)
    print(f"columns: {sizes}", file=sys.stderr)
    return 0


def _cmd_panes(_args: argparse.Namespace) -> int:
    bridge = TmuxBridge()
    panes = asyncio.run(bridge.list_tagged_panes(PANE_SESSION_TAG))
    if not panes:
        print("No tagged panes.")
        return 0
    for pane_id, session_id in sorted(panes.items()):
        print(f"{pane_id}\t{session_id}")
    return 0


_COMMANDS = {
    "run": _cmd_run,
    "reap": _cmd_reap,
    "layout": _cmd_layout,
    "panes": _cmd_panes,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return _COMMANDS[args.command](args)


if __name__ == "__main__":
    raise SystemExit(main())
