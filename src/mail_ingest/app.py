# =============================================================================
# mail-ingest Command Line
# =============================================================================
# Process entry point: parses arguments, configures logging, loads the
# configuration, resolves the consumer callable and runs the ingestor until
# SIGINT/SIGTERM or a fatal error.
#
# Commands:
#   mail-ingest run --consumer pkg.module:handle [--once]
#   mail-ingest init --username U --host H
#   mail-ingest paths
#
# Exit codes: 0 clean stop, 1 fatal ingestion stop, 2 configuration error.
# =============================================================================

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from pathlib import Path

from mail_ingest import __app_name__, __version__
from mail_ingest.config import AccountConfig, Config, ConfigError, print_paths
from mail_ingest.ingest import Consumer, IngestStoppedError, MailIngestor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def load_consumer(spec: str) -> Consumer:
    """
    Resolve "package.module:callable" to the consumer callable.

    Raises:
        ConfigError: If the module or attribute cannot be found.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Consumer must look like 'module:callable', got {spec!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import consumer module {module_name!r}: {e}") from e

    consumer = getattr(module, attr, None)
    if not callable(consumer):
        raise ConfigError(f"{spec!r} is not a callable")
    return consumer


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # aioimaplib logs every protocol line at DEBUG, LOGIN included
    logging.getLogger("aioimaplib").setLevel(logging.WARNING)


# =============================================================================
# Commands
# =============================================================================

async def _run_forever(ingestor: MailIngestor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, ingestor.stop)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass
    await ingestor.run()


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = Config.load(args.config)
        consumer = load_consumer(args.consumer)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG

    ingestor = MailIngestor(config, consumer)

    if args.once:
        try:
            report = asyncio.run(ingestor.run_once())
        except Exception as e:
            logger.error(f"Poll cycle failed: {e}")
            return EXIT_FATAL
        print(
            f"listed={report.listed} acknowledged={report.acknowledged} "
            f"marked={report.marked} rejected={report.rejected} skipped={report.skipped}"
        )
        return EXIT_OK

    try:
        asyncio.run(_run_forever(ingestor))
    except IngestStoppedError as e:
        logger.error(str(e))
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return EXIT_OK


def cmd_init(args: argparse.Namespace) -> int:
    config = Config(
        account=AccountConfig(
            name=args.name,
            username=args.username,
            host=args.host,
            port=args.port,
            security=args.security,
            folder=args.folder,
            password_env=args.password_env or "",
        )
    )
    try:
        config.validate()
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG

    path = config.save(args.config)
    print(f"Wrote {path}")
    if not args.password_env:
        account = config.account.to_account()
        print(f"Store the password with: keyring set {account.keyring_service} {account.username}")
    return EXIT_OK


def cmd_paths(args: argparse.Namespace) -> int:
    print_paths()
    return EXIT_OK


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Poll an IMAP mailbox and hand each new message to a consumer",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Poll the mailbox")
    run.add_argument(
        "--consumer",
        required=True,
        help="Consumer callable as 'package.module:function'",
    )
    run.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit",
    )
    run.set_defaults(handler=cmd_run)

    init = commands.add_parser("init", help="Write a config file")
    init.add_argument("--username", required=True)
    init.add_argument("--host", required=True)
    init.add_argument("--port", type=int, default=993)
    init.add_argument("--security", choices=["ssl", "starttls"], default="ssl")
    init.add_argument("--folder", default="INBOX")
    init.add_argument("--name", default="default", help="Account name (keyring service suffix)")
    init.add_argument("--password-env", help="Read the password from this environment variable")
    init.set_defaults(handler=cmd_init)

    paths = commands.add_parser("paths", help="Print configuration paths and exit")
    paths.set_defaults(handler=cmd_paths)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mail-ingest.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)
    setup_logging(args.debug)
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
