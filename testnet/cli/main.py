"""``testnet`` command line.

Commands:
    validate          Load a topology and print its startup order
    up                Bootstrap and supervise a cluster
    check             Run the cluster liveness check against a set of nodes
    materialize-keys  Copy a shared key bundle into a target directory

Exit codes:
    0  success / liveness check passed
    1  failure / liveness check failed / ``--exit-with`` process failed
    2  invalid topology or arguments
    3  key materialization failed

Usage:
    testnet validate tools/testnet.yaml --profile CI
    testnet up tools/testnet.yaml --profile CI --exit-with check --timeout 600
    testnet check --submit-url http://localhost:1340/artifacts --targets nodes.json --format json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from testnet import __version__
from testnet.config import defaults
from testnet.config.topology import load_topology
from testnet.coordination.enums import ClusterEventType
from testnet.coordination.key_materializer import KeyMaterializer
from testnet.coordination.liveness_checker import (
    TARGET_FORMATS,
    ClusterLivenessChecker,
    HttpArtifactTransport,
    parse_target_list,
)
from testnet.coordination.orchestrator import ClusterOrchestrator
from testnet.coordination.process_spec import KeyBundleSpec
from testnet.utils.exceptions import ConfigError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_MATERIALIZATION_FAILED = 3

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


# =============================================================================
# Commands
# =============================================================================


def cmd_validate(args: argparse.Namespace) -> int:
    topology = load_topology(args.topology, profiles=args.profile)
    config = topology.build_config()

    print(f"Topology: {args.topology}")
    if topology.excluded:
        print(f"Excluded by profile: {', '.join(topology.excluded)}")
    print(f"Processes: {len(topology.specs)}, instances: {topology.instance_count}")
    print("\nStartup order:")
    for line in topology.graph.describe():
        print(f"  {line}")
    print("\nTeardown levels:")
    for i, level in enumerate(topology.graph.teardown_levels(), 1):
        print(f"  {i}. {', '.join(level)}")
    if args.json:
        print(json.dumps(
            {
                "processes": [spec.to_dict() for spec in topology.specs],
                "orchestrator": config.to_dict(),
            },
            indent=2,
        ))
    return EXIT_OK


async def _run_up(args: argparse.Namespace) -> int:
    topology = load_topology(args.topology, profiles=args.profile)
    if args.exit_with and args.exit_with not in topology.graph:
        raise ConfigError(f"--exit-with names unknown process '{args.exit_with}'")

    config = topology.build_config()
    if args.log_dir:
        config = config.apply_overrides({"log_dir": args.log_dir})

    cluster = ClusterOrchestrator(topology, config=config)
    materialization_failed = asyncio.Event()
    stop_requested = asyncio.Event()
    cluster.bus.subscribe(ClusterEventType.MATERIALIZATION_FAILED, lambda event: materialization_failed.set())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            pass

    async with cluster:
        waiters: dict[str, asyncio.Task] = {
            "materialization": asyncio.create_task(materialization_failed.wait()),
            "signal": asyncio.create_task(stop_requested.wait()),
        }
        if args.exit_with:
            waiters["exit_with"] = asyncio.create_task(cluster.wait_for_exit(args.exit_with))

        done, pending = await asyncio.wait(
            waiters.values(), timeout=args.timeout, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if waiters.get("exit_with") in done:
            exit_code = waiters["exit_with"].result()
            logger.info(f"[testnet] {args.exit_with} exited with code {exit_code}")
            result = EXIT_OK if exit_code == 0 else (exit_code if exit_code and exit_code > 0 else EXIT_FAILED)
        elif waiters["materialization"] in done:
            logger.error(f"[testnet] {cluster.materialization_error}")
            result = EXIT_MATERIALIZATION_FAILED
        elif waiters["signal"] in done:
            logger.info("[testnet] Interrupted, shutting down")
            result = EXIT_OK
        else:
            logger.error(f"[testnet] Timed out after {args.timeout}s: {cluster.state_counts()}")
            result = EXIT_FAILED

        for error in cluster.failed_slots.values():
            logger.error(f"[testnet] {error}")

    return result


async def _run_check(args: argparse.Namespace) -> int:
    targets = parse_target_list(args.targets, args.format)
    async with HttpArtifactTransport(args.submit_url, request_timeout=args.request_timeout) as transport:
        checker = ClusterLivenessChecker(
            transport,
            targets,
            deadline=args.deadline,
            poll_interval=args.poll_interval,
            quorum=args.quorum,
        )
        report = await checker.check()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(("PASS: " if report.passed else "FAIL: ") + report.summary())
    return report.exit_code


async def _run_materialize(args: argparse.Namespace) -> int:
    sources = []
    for item in args.source:
        name, sep, path = item.partition("=")
        if not sep or not name or not path:
            raise ConfigError(f"--source expects name=path (got {item!r})")
        sources.append((name, Path(path)))
    spec = KeyBundleSpec(
        sources=tuple(sources),
        target_dir=Path(args.target_dir),
        mode=int(args.mode, 8),
    )
    return await KeyMaterializer(spec).run()


# =============================================================================
# Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testnet",
        description="Bootstrap, supervise and verify a local ledger test network",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # validate command
    p_validate = subparsers.add_parser("validate", help="Validate a topology file")
    p_validate.add_argument("topology", type=Path)
    p_validate.add_argument("--profile", action="append", default=[], help="Activate a profile (repeatable)")
    p_validate.add_argument("--json", action="store_true", help="Also dump processes and settings as JSON")

    # up command
    p_up = subparsers.add_parser("up", help="Bootstrap and supervise a cluster")
    p_up.add_argument("topology", type=Path)
    p_up.add_argument("--profile", action="append", default=[], help="Activate a profile (repeatable)")
    p_up.add_argument("--exit-with", metavar="NAME", help="Stop when process NAME exits; use its exit code")
    p_up.add_argument("--timeout", type=float, default=None, help="Give up after this many seconds")
    p_up.add_argument("--log-dir", help="Write per-instance output to this directory")

    # check command
    p_check = subparsers.add_parser("check", help="Run the cluster liveness check")
    p_check.add_argument("--submit-url", required=True, help="Endpoint accepting the artifact")
    p_check.add_argument(
        "--targets",
        help=f"Target list file or literal (default: ${defaults.TARGET_NODES_ENV})",
    )
    p_check.add_argument("--format", choices=TARGET_FORMATS, default="plain")
    p_check.add_argument("--deadline", type=float, default=defaults.LIVENESS_DEADLINE_SECONDS)
    p_check.add_argument("--poll-interval", type=float, default=defaults.LIVENESS_POLL_INTERVAL_SECONDS)
    p_check.add_argument("--request-timeout", type=float, default=defaults.LIVENESS_REQUEST_TIMEOUT_SECONDS)
    p_check.add_argument("--quorum", type=int, default=None, help="Confirmations required (default: all)")
    p_check.add_argument("--json", action="store_true", help="Print the full report as JSON")

    # materialize-keys command
    p_keys = subparsers.add_parser("materialize-keys", help="Materialize a shared key bundle")
    p_keys.add_argument("--source", action="append", required=True, metavar="NAME=PATH")
    p_keys.add_argument("--target-dir", required=True)
    p_keys.add_argument("--mode", default=oct(defaults.KEY_FILE_MODE), help="File mode (octal)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.verbose)

    try:
        if args.command == "validate":
            return cmd_validate(args)
        elif args.command == "up":
            return asyncio.run(_run_up(args))
        elif args.command == "check":
            return asyncio.run(_run_check(args))
        elif args.command == "materialize-keys":
            return asyncio.run(_run_materialize(args))
        parser.print_help()
        return EXIT_CONFIG_ERROR
    except ConfigError as e:
        logger.error(f"[testnet] Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR
    except ValueError as e:
        logger.error(f"[testnet] Invalid argument: {e}")
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
