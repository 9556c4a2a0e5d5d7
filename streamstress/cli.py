from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Sequence

from streamstress.core.config import DEFAULT_TIMEOUT_MS, HarnessConfig
from streamstress.core.contracts import StreamType
from streamstress.core.errors import ConfigurationError, WatchdogExpired
from streamstress.core.fanout import FanoutHarness
from streamstress.core.instance import StressInstance
from streamstress.core.log_sink import LOG_FORMAT, level_from_mask
from streamstress.core.outcome import Verdict
from streamstress.core.watchdog import WATCHDOG_EXIT_CODE

logger = logging.getLogger("streamstress.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="streamstress",
        description="Secure-stream client stress harness",
    )
    parser.add_argument("-c", dest="concurrency", type=int, default=1, help="Instances to run, 1..100")
    parser.add_argument("-d", dest="debug_mask", type=int, default=None, help="Verbosity bitmask")
    parser.add_argument("--log-level", type=str, default=None, help="Python logging level name")
    parser.add_argument("--force-portal", action="store_true", help="Simulate a captive portal")
    parser.add_argument("--force-no-internet", action="store_true", help="Simulate lost connectivity")
    parser.add_argument("--respmap", action="store_true", help="Use the respmap stream type")
    parser.add_argument("--ots", action="store_true", help="Use the mintest-ots stream type")
    parser.add_argument(
        "--timeout_ms",
        "--timeout-ms",
        dest="timeout_ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help="Per-attempt timeout in milliseconds",
    )
    parser.add_argument("--budget", type=int, default=1, help="Attempts each instance may make")
    parser.add_argument("--pass-limit", type=int, default=None, help="Successes needed (defaults to budget)")
    parser.add_argument("--expected-exit", type=int, default=0, help="Failure indicator the run should end with")
    parser.add_argument("--policy", type=str, default=None, help="Path to a JSON policy document")
    parser.add_argument("--log-dir", type=str, default=None, help="Directory for per-instance log files")
    parser.add_argument("--output", type=str, default="", help="Optional output path for JSON summary")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _stream_type(args: argparse.Namespace) -> StreamType:
    if args.ots:
        return StreamType.MINTEST_OTS
    if args.respmap:
        return StreamType.RESPMAP
    return StreamType.MINTEST


def resolve_log_level(args: argparse.Namespace, default: str) -> str:
    if args.log_level:
        return args.log_level.upper()
    if args.debug_mask is not None:
        return logging.getLevelName(level_from_mask(args.debug_mask))
    return default


def build_config(args: argparse.Namespace) -> HarnessConfig:
    defaults = HarnessConfig()
    config = HarnessConfig(
        concurrency=args.concurrency,
        timeout_ms=args.timeout_ms,
        budget=args.budget,
        pass_limit=args.pass_limit,
        force_portal=args.force_portal,
        force_no_internet=args.force_no_internet,
        stream_type=_stream_type(args),
        expected_exit=args.expected_exit,
        policy_path=args.policy or defaults.policy_path,
        log_dir=args.log_dir or defaults.log_dir,
        log_level=resolve_log_level(args, defaults.log_level),
    )
    config.validate()
    return config


async def _run_instance(instance: StressInstance) -> Verdict:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, instance.interrupt)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False
    try:
        return await instance.run()
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


def _write_summary(instance: StressInstance, output: str) -> None:
    if not output or instance.summary is None:
        return
    with open(output, "w", encoding="utf-8") as handle:
        handle.write(json.dumps(instance.summary.to_dict(), indent=2, sort_keys=True))
        handle.write("\n")


def execute(config: HarnessConfig, output: str = "") -> int:
    """Run one instance to completion and return its process exit status."""
    instance = StressInstance(config)
    try:
        verdict = asyncio.run(_run_instance(instance))
    except WatchdogExpired as exc:
        logger.error("%s", exc)
        _write_summary(instance, output)
        return WATCHDOG_EXIT_CODE
    logger.info("%s: %s", instance.name, verdict.tally_line.strip())
    logger.info("%s: %s", instance.name, verdict.completion_line)
    _write_summary(instance, output)
    return verdict.exit_code


def _terminate(code: int) -> None:
    if code == WATCHDOG_EXIT_CODE:
        # No graceful teardown after the watchdog: flush and leave.
        logging.shutdown()
        os._exit(code)
    sys.exit(code)


def instance_main(config: HarnessConfig) -> int:
    """Child-process entry; the watchdog exit bypasses interpreter shutdown."""
    code = execute(config)
    if code == WATCHDOG_EXIT_CODE:
        _terminate(code)
    return code


def run(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = build_config(args)
    except ConfigurationError as exc:
        parser.error(str(exc))

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logger.info("secure streams stress harness: %d instance(s), budget %d", config.concurrency, config.budget)

    harness = FanoutHarness(config, instance_main)
    harness.spawn()
    code = execute(config.for_instance(0), output=args.output)
    if code != WATCHDOG_EXIT_CODE:
        for ordinal, child_code in harness.join().items():
            logger.info("ctx%d exited with %s", ordinal, child_code)
    _terminate(code)


if __name__ == "__main__":
    run()
