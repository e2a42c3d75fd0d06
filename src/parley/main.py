"""
Parley - Command line entry point.

Created by orpheus497

    parley run [--handler module:function]   Run the agent in the foreground
    parley stop                              Stop a running agent
    parley status                            Sync cursor per conversation
    parley health                            Exit 0 when the agent is streaming
    parley init-config                       Write an example configuration
"""

import argparse
import asyncio
import getpass
import importlib
import json
import logging
import os
import signal
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from . import __version__
from .agent import Agent, read_status
from .config import AgentConfig, Config
from .constants import (
    APP_NAME,
    CONFIG_FILENAME,
    CONTENT_TYPE_TEXT,
    DEFAULT_DATA_DIR,
    IDENTITY_FILENAME,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    LOGS_DIR,
    PID_FILENAME,
)
from .errors import AuthenticationRejected, ConfigError, ParleyError, StreamUnavailable
from .identity import IdentityStore
from .matrix_transport import MatrixConfig, MatrixTransport
from .models import Message
from .stream import ConversationContext, Handler, NoAction, Reply

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_AUTH = 2
EXIT_STREAM = 3

PASSWORD_ENV = "PARLEY_IDENTITY_PASSWORD"


def echo_handler(message: Message, context: ConversationContext):
    """Reply "pong" to "ping" and echo every other text message."""
    if message.content_type != CONTENT_TYPE_TEXT or not isinstance(message.content, str):
        return NoAction()
    if message.content.strip().lower() == "ping":
        return Reply("pong")
    return Reply(message.content)


def load_handler(spec: Optional[str]) -> Handler:
    """Resolve ``module:function`` to a handler; None selects the echo handler."""
    if not spec:
        return echo_handler
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigError(message=f"Handler must be given as module:function, got {spec!r}")
    try:
        handler = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(message=f"Cannot load handler {spec}: {e}") from e
    if not callable(handler):
        raise ConfigError(message=f"Handler {spec} is not callable")
    return handler


def setup_logging(data_dir: Path, level: str, file_logging: bool = True, console_logging: bool = True) -> None:
    """Configure root logging with a console handler and a rotating log file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    if console_logging:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    if file_logging:
        log_dir = data_dir / LOGS_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / LOG_FILENAME, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # nio logs every request at INFO
    logging.getLogger("nio").setLevel(logging.WARNING)


def _resolve_data_dir(args: argparse.Namespace, config: Optional[Config] = None) -> Path:
    if args.data_dir:
        return Path(args.data_dir).expanduser().resolve()
    configured = config.get("agent", "data_dir") if config else None
    return Path(configured or DEFAULT_DATA_DIR).expanduser().resolve()


def _config_path(args: argparse.Namespace) -> Path:
    if args.config:
        return Path(args.config).expanduser()
    if args.data_dir:
        return Path(args.data_dir).expanduser() / CONFIG_FILENAME
    return Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME


def _read_pid(pid_file: Path) -> Optional[int]:
    """PID of a live agent, removing a stale PID file."""
    if not pid_file.exists():
        return None
    try:
        pid = int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except OSError:
        pid_file.unlink(missing_ok=True)
        return None
    return pid


def _identity_password() -> str:
    password = os.environ.get(PASSWORD_ENV)
    if password is None:
        password = getpass.getpass("Identity password: ")
    return password


# Commands


async def _run_agent(agent: Agent) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda sig=sig: asyncio.ensure_future(_shutdown(agent, sig)))

    try:
        await agent.run_forever()
    except AuthenticationRejected as e:
        logger.error(f"Authentication rejected: {e}")
        return EXIT_AUTH
    except StreamUnavailable as e:
        logger.error(f"Message stream unavailable: {e}")
        return EXIT_STREAM
    finally:
        await agent.stop()
    return EXIT_OK


async def _shutdown(agent: Agent, sig: int) -> None:
    logger.info(f"Received signal {sig}, shutting down...")
    await agent.stop()


def cmd_run(args: argparse.Namespace) -> int:
    config = Config(_config_path(args))
    data_dir = _resolve_data_dir(args, config)
    config.set("agent", "data_dir", str(data_dir))
    agent_config = AgentConfig.from_config(config)
    data_dir.mkdir(parents=True, exist_ok=True)
    setup_logging(
        data_dir,
        args.log_level or agent_config.log_level,
        config.get("logging", "file_logging", True),
        config.get("logging", "console_logging", True),
    )

    pid_file = data_dir / PID_FILENAME
    running = _read_pid(pid_file)
    if running is not None:
        logger.error(f"Agent already running (PID {running})")
        return EXIT_ERROR

    identities = IdentityStore(data_dir / IDENTITY_FILENAME)
    password = _identity_password()
    if identities.exists():
        identity = identities.load(password)
    else:
        identity = identities.create(config.get("matrix", "user_id", ""), password)

    handler = load_handler(args.handler)
    transport = MatrixTransport(MatrixConfig.from_config(config, data_dir))
    agent = Agent(agent_config, transport, identity, handler)

    pid_file.write_text(str(os.getpid()))
    logger.info(f"{APP_NAME} {__version__} starting (PID {os.getpid()}, data {data_dir})")
    try:
        return asyncio.run(_run_agent(agent))
    finally:
        pid_file.unlink(missing_ok=True)


def cmd_stop(args: argparse.Namespace) -> int:
    data_dir = _resolve_data_dir(args)
    pid = _read_pid(data_dir / PID_FILENAME)
    if pid is None:
        print("Agent is not running.")
        return EXIT_ERROR

    os.kill(pid, signal.SIGTERM)
    deadline = time.time() + args.timeout
    while time.time() < deadline:
        if _read_pid(data_dir / PID_FILENAME) is None:
            print(f"Agent stopped (PID {pid}).")
            return EXIT_OK
        time.sleep(0.2)
    print(f"Agent (PID {pid}) did not stop within {args.timeout}s.")
    return EXIT_ERROR


def cmd_status(args: argparse.Namespace) -> int:
    data_dir = _resolve_data_dir(args)
    status = read_status(data_dir)
    console = Console()
    if status is None:
        console.print("[yellow]No status available; has the agent been started?[/yellow]")
        return EXIT_ERROR

    running = _read_pid(data_dir / PID_FILENAME) is not None and status.get("running")
    console.print(
        f"Inbox: [bold]{status.get('inbox_id') or '-'}[/bold]  "
        f"running: {'yes' if running else 'no'}  "
        f"streaming: {'yes' if status.get('streaming') else 'no'}  "
        f"pending mutations: {status.get('pending_mutations', 0)}"
    )

    table = Table(title="Sync cursors")
    table.add_column("Conversation", style="cyan")
    table.add_column("Cursor")
    for conversation_id, cursor in sorted(status.get("cursors", {}).items()):
        table.add_row(conversation_id, cursor or "-")
    console.print(table)
    return EXIT_OK


def cmd_health(args: argparse.Namespace) -> int:
    data_dir = _resolve_data_dir(args)
    status = read_status(data_dir)
    alive = _read_pid(data_dir / PID_FILENAME) is not None
    healthy = bool(status and alive and status.get("healthy"))
    report = {
        "healthy": healthy,
        "running": alive,
        "streaming": bool(status and status.get("streaming")),
        "error": status.get("error") if status else "no status file",
    }
    print(json.dumps(report))
    return EXIT_OK if healthy else EXIT_ERROR


def cmd_init_config(args: argparse.Namespace) -> int:
    path = _config_path(args)
    if path.exists() and not args.force:
        print(f"Configuration already exists: {path} (use --force to overwrite)")
        return EXIT_ERROR
    Config.create_example(path)
    print(f"Example configuration written to {path}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="parley",
        description=f"{APP_NAME} - autonomous agent for end-to-end encrypted conversations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parley init-config                     # Write ~/.parley/config.toml
  parley run                             # Run with the echo handler
  parley run --handler mybot:handle      # Run with an application handler
  parley status                          # Show sync cursors

Created by orpheus497
        """,
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")
    parser.add_argument("--data-dir", type=str, default=None, help="Agent data directory")
    parser.add_argument("--config", type=str, default=None, help="Configuration file path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the agent in the foreground")
    run.add_argument("--handler", type=str, default=None, help="Message handler as module:function")
    run.add_argument("--log-level", type=str, default=None, help="Override the configured log level")
    run.set_defaults(func=cmd_run)

    stop = subparsers.add_parser("stop", help="Stop a running agent")
    stop.add_argument("--timeout", type=float, default=10.0, help="Seconds to wait (default: 10)")
    stop.set_defaults(func=cmd_stop)

    status = subparsers.add_parser("status", help="Show the sync cursor per conversation")
    status.set_defaults(func=cmd_status)

    health = subparsers.add_parser("health", help="Exit 0 when the agent is streaming")
    health.set_defaults(func=cmd_health)

    init_config = subparsers.add_parser("init-config", help="Write an example configuration file")
    init_config.add_argument("--force", action="store_true", help="Overwrite an existing file")
    init_config.set_defaults(func=cmd_init_config)

    return parser


def main(argv=None) -> int:
    """Main entry point for the parley command."""
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ParleyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_AUTH if isinstance(e, AuthenticationRejected) else EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
