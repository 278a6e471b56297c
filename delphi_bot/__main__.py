from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from delphi_bot.config import Config, load_config
from delphi_bot.jobs.lock import PidLock, pid_alive, read_pid
from delphi_bot.jobs.pipeline import RunOptions, RunOrchestrator, RunStatus, build_app_context
from delphi_bot.logging_setup import setup_logging
from delphi_bot.metrics.metrics import read_status_json


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="delphi-bot")
    parser.add_argument(
        "--env",
        default=".env",
        help="Path to .env file (default: .env).",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single check and exit (default).")
    mode.add_argument("--daemon", action="store_true", help="Keep running, one check every --interval seconds.")
    mode.add_argument("--digest-only", action="store_true", help="Only send the digest of recent reports.")
    mode.add_argument("--status", action="store_true", help="Print lock and last-run status, then exit.")
    mode.add_argument("--stop", action="store_true", help="Stop a running daemon (SIGTERM to its pid).")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between checks in daemon mode.")
    parser.add_argument(
        "--force-key",
        action="append",
        default=[],
        metavar="URL",
        help="Reprocess this report URL even if it was seen before (repeatable).",
    )
    parser.add_argument("--force-latest", type=int, default=0, metavar="N", help="Reprocess the newest N listed reports.")
    parser.add_argument("--resend", action="store_true", help="Send forced reports again even if already delivered.")
    parser.add_argument(
        "--resummarize",
        action="store_true",
        help="Summarize forced reports again even if their text is unchanged.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Process and persist, but send nothing.")
    parser.add_argument("--digest", action="store_true", help="Send a digest after the run.")
    return parser.parse_args(argv)


def _options_from_args(args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        force_keys=tuple(args.force_key),
        force_latest=max(0, args.force_latest),
        resend=args.resend,
        publish=not args.dry_run,
        digest=args.digest,
        resummarize=args.resummarize,
    )


def print_status(config: Config) -> int:
    pid = read_pid(config.lock_path)
    daemon_pid = read_pid(config.daemon_pid_path)
    data = {
        "lock_path": str(config.lock_path),
        "pid": pid,
        "running": pid is not None and pid_alive(pid),
        "daemon_pid": daemon_pid if daemon_pid is not None and pid_alive(daemon_pid) else None,
        "status": read_status_json(config.status_json_path),
    }
    print(json.dumps(data, ensure_ascii=False, indent=2))
    return 0


def stop_daemon(config: Config) -> int:
    path = config.daemon_pid_path
    if not path.exists():
        print("no daemon appears to be running")
        return 1

    pid = read_pid(path)
    if pid is None or not pid_alive(pid):
        print(f"removing stale pid file {path} (pid {pid})")
        path.unlink(missing_ok=True)
        return 1

    os.kill(pid, signal.SIGTERM)
    print(f"sent SIGTERM to daemon pid {pid}")
    return 0


async def _run(args: argparse.Namespace, config: Config) -> int:
    ctx = build_app_context(config)
    orchestrator = RunOrchestrator.from_context(ctx)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):  # not supported on Windows
            loop.add_signal_handler(sig, task.cancel)

    try:
        if args.digest_only:
            await orchestrator.send_digest()
            return 0

        options = _options_from_args(args)
        if args.daemon:
            daemon_lock = PidLock(config.daemon_pid_path)
            if not daemon_lock.acquire():
                logger.error("a daemon is already running (pid file %s)", config.daemon_pid_path)
                return 1
            try:
                if config.metrics_enabled:
                    ctx.metrics.start_server(config.metrics_bind, config.metrics_port)
                interval = args.interval or config.check_interval_seconds
                logger.info("daemon started, checking every %ss", interval)
                await orchestrator.run_forever(options, interval_seconds=interval)
            finally:
                daemon_lock.release()
            return 0

        result = await orchestrator.run_once(options)
        logger.info("run %s at %s: %s", result.status.value, result.stage.value, result.counts())
        return 1 if result.status == RunStatus.FAILED else 0
    except asyncio.CancelledError:
        logger.info("interrupted, shutting down")
        return 130
    finally:
        await ctx.aclose()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()

    config = load_config()
    setup_logging(config.log_level, config.log_file)

    if args.status:
        sys.exit(print_status(config))
    if args.stop:
        sys.exit(stop_daemon(config))

    sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
