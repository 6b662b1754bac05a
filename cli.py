#!/usr/bin/env python3
"""
Command-line interface for the parking event pipeline.

Usage:
    python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    test        Run the test suite
    serve       Start the API server

Examples:
    python cli.py demo occupancy-billing
    python cli.py demo all
    python cli.py serve --reload
"""

import argparse
import subprocess
import sys

from parking.config import configure_logging, get_settings

SCENARIO_NAMES = ["occupancy-billing", "duplicate", "payment", "poison", "out-of-order", "all"]


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from pipeline.demo import SCENARIOS, run_all_demos

    if scenario == "all":
        run_all_demos()
    elif scenario in SCENARIOS:
        SCENARIOS[scenario]()
    else:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    sys.exit(subprocess.run(cmd).returncode)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    import uvicorn

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    uvicorn.run("api.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Parking event pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo occupancy-billing
  %(prog)s demo all
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )
    parser.add_argument("--log-level", default=None, help="Override PARKING_LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument("scenario", choices=SCENARIO_NAMES, help="Which scenario to run")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        configure_logging(args.log_level or get_settings().log_level)
        run_demo(args.scenario)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        configure_logging(args.log_level or get_settings().log_level)
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
