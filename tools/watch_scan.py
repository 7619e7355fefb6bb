#!/usr/bin/env python3
"""Run one cloud-account scan and print its progress.

Streams progress when the server supports it and falls back to status
polling otherwise. Ctrl-C cancels the scan.

Usage:
    python -m tools.watch_scan --provider aws --target users --target groups
    python -m tools.watch_scan --provider aws --profile prod --name-prefix svc-
    python -m tools.watch_scan --provider azure --subscription-id SUB \\
        --scope-type resource_group --scope-value rg-iam
    python -m tools.watch_scan --provider aws --mock --mock-stream-mode drop

Exit codes: 0 completed, 1 failed, 2 bad arguments/config, 130 cancelled.
"""

import argparse
import asyncio
import dataclasses
import os
import signal
import sys

# Add parent to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import DEFAULT_CONFIG_FILE, ClientSettings, load_settings
from core.logging_config import configure_logging
from core.session import ScanSession
from core.types import ConfigError, ProgressEvent, ScanConfig, SessionState
from streaming.api import ScanApiClient
from streaming.callbacks import ScanCallbacks
from streaming.mock_backend import STREAM_MODES, MockScanBackend

EXIT_CODES = {
    SessionState.COMPLETED: 0,
    SessionState.FAILED: 1,
    SessionState.CANCELLED: 130,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watch_scan",
        description="Start a cloud IAM scan and follow it to completion",
    )
    parser.add_argument("--provider", choices=["aws", "azure"], required=True)
    parser.add_argument(
        "--target",
        action="append",
        dest="targets",
        metavar="CATEGORY",
        help="Resource category to scan (repeatable; default: provider defaults)",
    )
    parser.add_argument("--name-prefix", help="Only resources whose name starts with this")
    parser.add_argument("--no-tags", action="store_true", help="Skip tag collection")

    aws = parser.add_argument_group("aws")
    aws.add_argument("--profile")
    aws.add_argument("--assume-role-arn")

    azure = parser.add_argument_group("azure")
    azure.add_argument("--subscription-id")
    azure.add_argument("--tenant-id")
    azure.add_argument("--auth-method", choices=["az_login", "service_principal"])
    azure.add_argument(
        "--scope-type", choices=["management_group", "subscription", "resource_group"]
    )
    azure.add_argument("--scope-value")

    conn = parser.add_argument_group("connection")
    conn.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Settings YAML file")
    conn.add_argument("--url", help="Scan API base URL (overrides config)")
    conn.add_argument("--interval-ms", type=int, help="Polling interval in milliseconds")
    conn.add_argument("--no-stream", action="store_true", help="Poll only, never stream")
    conn.add_argument("--log-level", help="Log level (overrides config)")

    mock = parser.add_argument_group("mock")
    mock.add_argument("--mock", action="store_true", help="Use the simulated scan server")
    mock.add_argument("--mock-stream-mode", choices=sorted(STREAM_MODES), default="full")
    mock.add_argument("--mock-fail", metavar="MESSAGE", help="Make the simulated scan fail")
    return parser


def build_scan_config(args: argparse.Namespace) -> ScanConfig:
    """Translate CLI arguments into a ScanConfig."""
    fields = {
        "profile": args.profile,
        "assume_role_arn": args.assume_role_arn,
        "subscription_id": args.subscription_id,
        "tenant_id": args.tenant_id,
        "auth_method": args.auth_method,
        "scope_type": args.scope_type,
        "scope_value": args.scope_value,
    }
    targets = {name: True for name in args.targets or []}
    return ScanConfig.for_provider(
        args.provider,
        name_prefix=args.name_prefix,
        scan_targets=targets,
        include_tags=not args.no_tags,
        **{k: v for k, v in fields.items() if v},
    )


def apply_overrides(settings: ClientSettings, args: argparse.Namespace) -> ClientSettings:
    """Apply command-line overrides on top of loaded settings."""
    overrides = {}
    if args.url:
        overrides["base_url"] = args.url
    if args.interval_ms is not None:
        if args.interval_ms <= 0:
            raise ConfigError("--interval-ms must be positive")
        overrides["poll_interval_ms"] = args.interval_ms
    if args.no_stream:
        overrides["stream_enabled"] = False
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.mock:
        overrides["mock"] = True
    return dataclasses.replace(settings, **overrides)


def format_progress(event: ProgressEvent) -> str:
    """One output line for a progress event."""
    return f"[{event.percent:3d}%] {event.display_message}"


async def watch(
    config: ScanConfig,
    settings: ClientSettings,
    backend: MockScanBackend | None = None,
    out=None,
) -> SessionState:
    """Run one session, printing progress to out (default stdout)."""
    out = out or sys.stdout
    transport = backend.transport if backend is not None else None
    api = ScanApiClient(settings, transport=transport)

    last_line = None

    def show(event: ProgressEvent) -> None:
        nonlocal last_line
        # Polling reports the same state on every tick; print changes only
        line = format_progress(event)
        if line == last_line:
            return
        last_line = line
        print(line, file=out, flush=True)

    def show_error(event: ProgressEvent) -> None:
        print(f"Scan failed: {event.message}", file=out, flush=True)

    def show_results(job_id: str) -> None:
        print(f"Scan completed. Resources: /resources/{job_id}", file=out, flush=True)

    callbacks = ScanCallbacks(on_progress=show, on_resource=show, on_error=show_error)

    async with ScanSession(
        api, callbacks, on_advance=show_results, settings=settings, owns_api=True
    ) as session:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, session.cancel)
        except (NotImplementedError, RuntimeError):
            # Signal handlers are unavailable on Windows event loops
            pass

        try:
            state = await session.run(config)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

        if state is SessionState.CANCELLED:
            print("Scan cancelled", file=out, flush=True)
        elif state is SessionState.COMPLETED and session.summary:
            for resource_type, count in sorted(session.summary.items()):
                print(f"  {resource_type:20} {count}", file=out)
        return state


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = apply_overrides(load_settings(args.config), args)
        config = build_scan_config(args)
        configure_logging(settings.log_level, json_output=False)
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    backend = None
    if settings.mock:
        backend = MockScanBackend(
            stream_mode=args.mock_stream_mode,
            fail_with=args.mock_fail,
            frame_delay=0.3,
        )

    state = asyncio.run(watch(config, settings, backend=backend))
    return EXIT_CODES.get(state, 1)


if __name__ == "__main__":
    sys.exit(main())
