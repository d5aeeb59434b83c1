"""Shared utility functions."""

import logging
import os
import secrets
import string
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("provisionvm")

DEFAULT_SSH_USER = "root"


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Use as out_stream/err_stream in fabric c.run() calls so remote SSH output
    goes through the logging system instead of directly to the terminal.
    """

    def __init__(self) -> None:
        self._buf = ""

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(line)

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(self._buf)
            self._buf = ""


def setup_logging(level: int | str | None = None) -> None:
    """Set up logging with Rich handler to stderr.

    :param level: Log level; defaults to PROVISIONVM_LOG_LEVEL or INFO
    """
    load_dotenv()
    if level is None:
        level = os.getenv("PROVISIONVM_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("urllib3", logging.WARNING, True),
        ("paramiko", logging.WARNING, True),
        ("fabric", logging.WARNING, True),
        ("invoke", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def success(msg: str) -> None:
    """Log a completed step."""
    logger.info(f"[green]✓ {msg}[/green]")


def skip(msg: str) -> None:
    """Log a step skipped because its component is already present."""
    logger.info(f"[yellow]⚠ {msg} (already installed)[/yellow]")


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def get_ssh_user(default: str = DEFAULT_SSH_USER) -> str:
    """Get default SSH user from PROVISIONVM_SSH_USER (or .env).

    :return: SSH username (root unless overridden)
    """
    load_dotenv()
    return os.getenv("PROVISIONVM_SSH_USER", default)


def get_default_email(server_names: str) -> str:
    """Let's Encrypt registration email: PROVISIONVM_EMAIL or admin@<primary domain>."""
    load_dotenv()
    return os.getenv("PROVISIONVM_EMAIL") or f"admin@{primary_domain(server_names)}"


def primary_domain(server_names: str) -> str:
    """First name of a space separated server_name list."""
    parts = server_names.split()
    return parts[0] if parts else ""


def sanitize_db_name(app_name: str) -> str:
    return app_name.replace("-", "_")


def generate_password(length: int = 16) -> str:
    """Random alphanumeric password."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))

