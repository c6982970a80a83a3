#!/usr/bin/env python3
"""
Cluster Preflight Script

Main entry point for verifying agent readiness and service consistency on a
cluster reachable over SSH.

Usage:
    python scripts/preflight.py -i cluster.yaml preflight
    python scripts/preflight.py -i cluster.yaml wait -l app=web --min 3
    python scripts/preflight.py -i cluster.yaml services --all
    python scripts/preflight.py -i cluster.yaml service kube-dns -n kube-system
    python scripts/preflight.py -i cluster.yaml endpoints
    python scripts/preflight.py -i cluster.yaml report
"""

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

# Add parent directory to path for imports when running as script
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
if project_root not in sys.path:
    sys.path.insert(0, project_root)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )


def build_checker(inventory: Dict[str, Any], runner):
    """
    Wire collectors and the checker around a command runner.

    Args:
        inventory: Result of inventory.load_inventory
        runner: Command runner on the control node (SSHClient or a fake)
    """
    from collector import AgentClient, ControlPlane
    from engine import PreflightChecker

    kubectl = inventory["kubectl"]
    return PreflightChecker(
        control_plane=ControlPlane(runner, kubectl=kubectl),
        agent_client=AgentClient(runner, kubectl=kubectl, commands=inventory["commands"]),
        settings=inventory["settings"],
    )


def dispatch(args: argparse.Namespace, checker) -> None:
    """Dispatch the selected subcommand. Verification failures raise."""
    from errors import Timeout
    from output import LoggingReportSink, StreamReportSink, format_issues

    if args.command == "wait":
        checker.wait_for_ready(
            args.selector,
            min_count=args.min,
            timeout=args.timeout,
            namespace=args.namespace,
        )
        print(f"Pods with selector '{args.selector}' are ready")

    elif args.command == "preflight":
        try:
            checker.run_preflight(timeout=args.timeout)
        except Timeout:
            # agent state at the moment of failure, for the log
            checker.check_report(LoggingReportSink("preflight.report"))
            raise
        print("Preflight check passed")

    elif args.command == "services":
        if args.all:
            snapshot = checker.build_snapshot()
            issues = checker.validator.find_issues(snapshot)
            print(format_issues(issues))
            if issues:
                raise issues[0]
        else:
            checker.validate_service_consistency()
            print("Service state is consistent")

    elif args.command == "service":
        checker.validate_service(args.name, args.namespace)
        print(f"Service {args.namespace}/{args.name} is realized on every agent")

    elif args.command == "endpoints":
        checker.wait_for_endpoints_ready(timeout=args.timeout)
        print("All agent endpoints are ready")

    elif args.command == "report":
        checker.check_report(StreamReportSink(sys.stdout))


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Verify agent readiness and service consistency across a cluster"
    )
    parser.add_argument(
        "-i", "--inventory",
        default="cluster.yaml",
        help="Path to inventory file (default: cluster.yaml)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    wait = sub.add_parser("wait", help="Wait for pods to be ready")
    wait.add_argument("-l", "--selector", required=True, help="Label selector of the pods")
    wait.add_argument("-n", "--namespace", help="Namespace (default: agent namespace)")
    wait.add_argument("--min", type=int, default=0, help="Pods required, 0 for all (default: 0)")
    wait.add_argument("-t", "--timeout", type=float, help="Timeout in seconds")

    preflight = sub.add_parser("preflight", help="Run the full preflight check")
    preflight.add_argument("-t", "--timeout", type=float, help="Timeout in seconds")

    services = sub.add_parser("services", help="Validate service consistency once")
    services.add_argument("--all", action="store_true", help="List every issue instead of the first")

    service = sub.add_parser("service", help="Validate a single service")
    service.add_argument("name", help="Service name")
    service.add_argument("-n", "--namespace", default="default", help="Service namespace")

    endpoints = sub.add_parser("endpoints", help="Wait for agent endpoints to be ready")
    endpoints.add_argument("-t", "--timeout", type=float, help="Timeout in seconds")

    sub.add_parser("report", help="Print agent status report")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # Import here to allow --help to work without dependencies
    from ssh_client import SSHClient, SSHClientError
    from inventory import InventoryError, load_inventory, get_ssh_config
    from errors import VerificationError

    try:
        inventory = load_inventory(args.inventory)
        ssh_config = get_ssh_config(inventory)
        hostname = ssh_config.pop("hostname")

        with SSHClient(hostname=hostname, **ssh_config) as ssh:
            dispatch(args, build_checker(inventory, ssh))

    except InventoryError as e:
        logger.error(f"Inventory error: {e}")
        return 1
    except SSHClientError as e:
        logger.error(f"SSH error: {e}")
        return 1
    except VerificationError as e:
        logger.error(f"Verification failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
