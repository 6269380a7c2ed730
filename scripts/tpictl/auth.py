"""Credential resolution: cached tokens, explicit login, vendor defaults."""

import logging

import requests

from tpictl import API_AUTHENTICATE, AUTH_TIMEOUT, DEFAULT_CREDENTIALS
from tpictl.client import (
    BMCAuthError,
    BMCConnectionError,
    BMCInvalidCredentials,
    BMCProtocolError,
    user_agent,
)


class CredentialResolver:
    """Turns a host plus optional credentials into a bearer token.

    Resolution order, first success wins:
      1. cached token for the host
      2. cached legacy (host-less) token
      3. explicit username/password via POST /api/bmc/authenticate
      4. vendor default credential pairs, only if try_default_credentials
    """

    def __init__(self, token_cache, session=None, scheme="https",
                 try_default_credentials=False, default_credentials=None, logger=None):
        self.token_cache = token_cache
        if session is None:
            session = requests.Session()
            session.verify = False
        self.session = session
        self.scheme = scheme
        self.try_default_credentials = try_default_credentials
        self.default_credentials = list(default_credentials or DEFAULT_CREDENTIALS)
        self.logger = logger or logging.getLogger(__name__)

    def resolve(self, host, username="", password=""):
        token = self.token_cache.lookup(host)
        if token:
            self.logger.debug(f"Using cached token for {host}")
            return token

        if username and password:
            return self.authenticate(host, username, password)

        return self._try_defaults(host)

    def force_authenticate(self, host, username="", password=""):
        """Discard the cached token for ``host`` and log in again."""
        self.token_cache.delete(host)
        if username:
            return self.authenticate(host, username, password)
        return self._try_defaults(host)

    def authenticate(self, host, username, password):
        """POST the credentials and cache the returned token for ``host``."""
        url = f"{self.scheme}://{host}{API_AUTHENTICATE}"
        self.logger.debug(f"Auth attempt with user {username} to {url}")

        try:
            resp = self.session.post(
                url,
                json={"username": username, "password": password},
                headers={"User-Agent": user_agent()},
                timeout=AUTH_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise BMCConnectionError(f"Failed to send auth request to {host}: {e}") from e

        if resp.status_code == 403:
            raise BMCInvalidCredentials(
                "authentication failed: invalid credentials",
                status_code=403,
                body=resp.text,
            )
        if resp.status_code != 200:
            self.logger.debug(f"Auth failed with status {resp.status_code}: {resp.text}")
            raise BMCAuthError(
                f"authentication failed: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise BMCProtocolError(f"failed to parse auth response: {e}") from e
        token = data.get("id") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise BMCProtocolError("invalid auth response: missing id field")

        try:
            self.token_cache.put(host, token)
        except OSError as e:
            self.logger.warning(f"Failed to cache token for host {host}: {e}")

        return token

    def _try_defaults(self, host):
        if not self.try_default_credentials:
            raise BMCAuthError(
                f"no credentials provided for {host}: pass --user/--password "
                "or enable --try-default-credentials"
            )

        last_error = None
        for username, password in self.default_credentials:
            try:
                token = self.authenticate(host, username, password)
            except (BMCAuthError, BMCConnectionError, BMCProtocolError) as e:
                self.logger.debug(f"Default credentials for {username} rejected: {e}")
                last_error = e
                continue
            self.logger.warning(f"Authenticated to {host} with vendor default credentials for {username}")
            return token

        if last_error is None:
            raise BMCAuthError("no default credentials configured")
        raise last_error.with_context("default credential login", len(self.default_credentials))
