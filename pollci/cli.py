"""CLI entry point for pollci.

Usage:
    pollci <github-token> <storage-account> <storage-key> [workdir]

Secrets are passed on the command line; everything else comes from
.pollci/config or the environment (see pollci.config).
"""

import argparse
import asyncio
import sys

from pollci import __version__
from pollci.config import ConfigError, load_config
from pollci.daemon import Daemon
from pollci.interfaces import LogSinkError
from pollci.log_sinks import AzureAppendBlobSink
from pollci.logger import get_logger, setup_logging
from pollci.telemetry import init_telemetry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pollci",
        description="Self-coordinating CI worker that polls pull requests and runs test jobs",
    )
    parser.add_argument(
        "github_token",
        nargs="?",
        metavar="github-token",
        help="GitHub token with 'repo' scope",
    )
    parser.add_argument(
        "storage_account",
        nargs="?",
        metavar="storage-account",
        help="Azure storage account holding job logs",
    )
    parser.add_argument(
        "storage_key",
        nargs="?",
        metavar="storage-key",
        help="Azure storage account key",
    )
    parser.add_argument(
        "workdir",
        nargs="?",
        default=None,
        help="Directory for job workspaces (default: <tmp>/pollci)",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the pollci CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not (args.github_token and args.storage_account and args.storage_key):
        parser.print_usage(sys.stderr)
        print(
            "pollci: error: expected <github-token> <storage-account> <storage-key> [workdir]",
            file=sys.stderr,
        )
        sys.exit(1)

    try:
        config = load_config(
            args.github_token,
            args.storage_account,
            args.storage_key,
            workdir=args.workdir,
        )
        sink = AzureAppendBlobSink(config.storage_account, config.storage_key)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except LogSinkError as e:
        print(f"Log sink error: {e}", file=sys.stderr)
        sys.exit(1)

    masking_filter = setup_logging(
        log_file=config.log_file,
        log_size=config.log_size,
        log_backups=config.log_backups,
        daemon_mode=config.daemon_mode,
        secrets=config.secrets,
    )
    logger = get_logger(__name__)
    logger.info(f"=== pollci Starting (v{__version__}) ===")
    logger.info(f"Logging to {config.log_file}")

    if config.otel_endpoint:
        init_telemetry(
            config.otel_endpoint,
            config.otel_service_name,
            service_version=__version__,
        )

    daemon = Daemon(config, sink=sink, mask=masking_filter.mask_value)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
