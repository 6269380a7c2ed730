"""Per-host bearer token cache stored as one file per BMC host."""

import logging
import os
import tempfile

from tpictl.config import default_cache_dir


TOKEN_PREFIX = "tpi_token"
LEGACY_HOST = ""


class TokenCache:
    """Persists one bearer token per host.

    Each host maps to ``tpi_token_<hex(host)>`` in the cache directory. The
    empty host maps to the legacy ``tpi_token`` entry that older releases
    wrote; ``lookup()`` falls back to it when a host has no entry of its own.
    """

    def __init__(self, cache_dir=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._requested_dir = cache_dir
        self._cache_dir = None

    @property
    def cache_dir(self):
        if self._cache_dir is None:
            path = self._requested_dir or default_cache_dir()
            try:
                os.makedirs(path, mode=0o700, exist_ok=True)
            except OSError as e:
                self.logger.debug(f"Cannot create cache dir {path} ({e}), using current directory")
                path = os.getcwd()
            self._cache_dir = path
        return self._cache_dir

    @staticmethod
    def key_for(host):
        """Return the file name holding the token for ``host``."""
        if host == LEGACY_HOST:
            return TOKEN_PREFIX
        return f"{TOKEN_PREFIX}_{host.encode('utf-8').hex()}"

    @staticmethod
    def host_for(key):
        """Inverse of ``key_for``. Returns None for foreign file names."""
        if key == TOKEN_PREFIX:
            return LEGACY_HOST
        prefix = f"{TOKEN_PREFIX}_"
        if not key.startswith(prefix):
            return None
        try:
            return bytes.fromhex(key[len(prefix):]).decode("utf-8")
        except ValueError:
            return None

    def path_for(self, host):
        return os.path.join(self.cache_dir, self.key_for(host))

    def get(self, host):
        """Return the token cached for exactly ``host``, or None."""
        try:
            with open(self.path_for(host)) as f:
                token = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.debug(f"Cannot read cached token for {host or 'default'}: {e}")
            return None
        return token or None

    def lookup(self, host):
        """Return the token for ``host``, falling back to the legacy entry."""
        token = self.get(host)
        if token is None and host != LEGACY_HOST:
            token = self.get(LEGACY_HOST)
        return token

    def put(self, host, token):
        """Atomically write ``token`` for ``host`` with owner-only permissions."""
        path = self.path_for(host)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{TOKEN_PREFIX}.", dir=self.cache_dir)
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(token)
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self.logger.debug(f"Cached token for {host or 'default'} at {path}")

    def delete(self, host):
        """Remove the token for ``host``. Missing entries are not an error."""
        try:
            os.remove(self.path_for(host))
        except FileNotFoundError:
            pass

    def list_hosts(self):
        """Return the hosts that currently have a cached token.

        The legacy entry is reported as the empty string.
        """
        try:
            names = sorted(os.listdir(self.cache_dir))
        except FileNotFoundError:
            return []

        hosts = []
        for name in names:
            host = self.host_for(name)
            if host is None:
                continue
            hosts.append(host)
        return hosts

    def clear(self):
        """Delete every cached token. Returns the hosts that were removed."""
        hosts = self.list_hosts()
        for host in hosts:
            self.delete(host)
        return hosts
