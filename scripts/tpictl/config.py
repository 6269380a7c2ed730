"""Configuration loading for tpictl - credentials, cache location, logging."""

import logging
import os
import socket
import sys
from dataclasses import dataclass
from typing import Optional


CREDENTIALS_FILE = os.path.expanduser("~/.tpi_credentials")
LOG_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Probes used to recognise that we are running on the BMC itself
LOCAL_PROBE_ADDRESSES = [("127.0.0.1", 80), ("127.0.0.1", 443)]
LOCAL_GPIO_MARKER = "/sys/class/gpio/export"


@dataclass
class Settings:
    host: str = ""
    username: str = ""
    password: str = ""
    api_version: str = "v1-1"
    try_default_credentials: bool = False
    cache_dir: Optional[str] = None

    def has_credentials(self):
        return bool(self.username and self.password)


def default_cache_dir() -> str:
    """Return the per-user directory holding cached tokens."""
    override = os.environ.get("TPI_CACHE_DIR")
    if override:
        return override

    if sys.platform == "win32":
        base = os.environ.get("LOCALAPPDATA")
        return os.path.join(base, "tpi") if base else "."
    home = os.path.expanduser("~")
    if home == "~":
        return "."
    if sys.platform == "darwin":
        return os.path.join(home, "Library", "Caches", "tpi")
    return os.path.join(home, ".cache", "tpi")


def load_credentials(credentials_file: Optional[str] = None) -> tuple:
    """Load BMC credentials from ~/.tpi_credentials.

    The file holds a single ``TPI_AUTH="user:password"`` line. It is optional:
    a missing or unparsable file yields empty credentials so that cached
    tokens can still be used.

    Returns (username, password) tuple.
    """
    path = credentials_file or CREDENTIALS_FILE
    try:
        with open(path) as f:
            content = f.read().strip()
    except FileNotFoundError:
        return "", ""

    if content.startswith("TPI_AUTH="):
        auth_str = content.split("=", 1)[1].strip('"')
        parts = auth_str.split(":", 1)
        if len(parts) == 2:
            return parts[0], parts[1]

    logging.getLogger(__name__).warning(f"Could not parse TPI_AUTH in {path}, ignoring it")
    return "", ""


def detect_local_host() -> Optional[str]:
    """Return 127.0.0.1 when this process runs on the BMC, else None."""
    for address in LOCAL_PROBE_ADDRESSES:
        try:
            with socket.create_connection(address, timeout=0.1):
                return "127.0.0.1"
        except OSError:
            continue
    if os.path.exists(LOCAL_GPIO_MARKER):
        return "127.0.0.1"
    return None


def configure_logging(verbose=False):
    """Route tpictl log records to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # urllib3 is chatty at DEBUG and would echo auth headers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
