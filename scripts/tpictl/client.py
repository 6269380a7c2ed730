"""BMCClient - Turing Pi BMC HTTP dispatcher with bearer-token re-authentication."""

import copy
import dataclasses
import logging
import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import requests
import urllib3
from urllib3.filepost import encode_multipart_formdata

from tpictl import API_BMC, DEFAULT_TIMEOUT
from tpictl.token_cache import LEGACY_HOST, TokenCache

# The BMC ships a self-signed certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class BMCError(Exception):
    """Base exception for BMC operations."""

    phase = None
    attempts = None

    def with_context(self, phase, attempts):
        """Record which phase gave up and after how many attempts."""
        self.phase = phase
        self.attempts = attempts
        return self

    def __str__(self):
        message = super().__str__()
        if self.phase:
            return f"{self.phase} failed after {self.attempts} attempt(s): {message}"
        return message


class BMCConnectionError(BMCError):
    """Connection-level failures (timeout, refused, DNS)."""
    pass


class BMCAuthError(BMCError):
    """Authentication failures."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BMCInvalidCredentials(BMCAuthError):
    """The BMC rejected the username/password pair (HTTP 403)."""
    pass


class BMCHTTPError(BMCError):
    """HTTP-level errors with status code."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BMCProtocolError(BMCError):
    """Response had an unexpected shape."""
    pass


class BMCServerError(BMCError):
    """The BMC reported an explicit error payload."""

    def __init__(self, message, payload=None):
        super().__init__(message)
        self.payload = payload


class ChecksumMismatch(BMCError):
    """Local file does not match the SHA-256 the caller supplied."""

    def __init__(self, provided, calculated):
        super().__init__(
            f"SHA256 checksum mismatch: provided {provided}, calculated {calculated}"
        )
        self.provided = provided
        self.calculated = calculated


class TransferTimeout(BMCError):
    """The overall deadline of an operation expired."""
    pass


class TransferCancelled(BMCError):
    """The caller cancelled the operation."""
    pass


class ApiVersion(Enum):
    V1 = "v1"
    V1_1 = "v1-1"

    @property
    def scheme(self):
        return "http" if self is ApiVersion.V1 else "https"


def user_agent():
    return f"tpictl ({platform.system().lower()};python {platform.python_version()})"


@dataclass
class RequestDescriptor:
    """Everything needed to send one HTTP exchange to the BMC.

    A descriptor belongs to the call that built it. Retries send a
    ``clone()`` so attempts never share headers, params or body buffers.
    The deadline is shared on purpose: cancelling it must stop every attempt.
    """

    url: str
    host: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    params: List[Tuple[str, str]] = field(default_factory=list)
    json_body: Optional[dict] = None
    body: Optional[bytes] = None
    content_type: Optional[str] = None
    timeout: Optional[float] = None
    deadline: Optional[object] = None

    def add_param(self, key, value):
        self.params.append((key, str(value)))
        return self

    def set_multipart(self, field_name, file_name, data):
        """Buffer ``data`` as a multipart/form-data body under ``field_name``."""
        body, content_type = encode_multipart_formdata({field_name: (file_name, data)})
        self.body = body
        self.content_type = content_type
        self.method = "POST"
        return self

    def clone(self):
        return dataclasses.replace(
            self,
            headers=dict(self.headers),
            params=list(self.params),
            json_body=copy.deepcopy(self.json_body),
            body=bytes(self.body) if self.body is not None else None,
        )

    def effective_timeout(self):
        """Per-call timeout, capped by the remaining deadline.

        Raises TransferTimeout/TransferCancelled if the deadline is already over.
        """
        timeout = self.timeout or DEFAULT_TIMEOUT
        if self.deadline is not None:
            if self.deadline.expired():
                raise self.deadline.error()
            timeout = min(timeout, self.deadline.remaining())
        return timeout


class BMCClient:
    """HTTP client for a single Turing Pi BMC.

    Sends every request with certificate verification disabled and attaches
    the cached bearer token for the host. A 401 on an unauthenticated attempt
    triggers exactly one credential resolution and resend; a 401 with a
    cached token discards that token and is returned to the caller.
    """

    def __init__(self, host, username="", password="", api_version=ApiVersion.V1_1,
                 token_cache=None, resolver=None, session=None, logger=None,
                 try_default_credentials=False):
        self.host = host
        self.username = username or ""
        self.password = password or ""
        self.api_version = ApiVersion(api_version)
        self.logger = logger or logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            session.verify = False
        self.session = session

        if token_cache is None:
            token_cache = TokenCache(logger=self.logger)
        self.token_cache = token_cache

        if resolver is None:
            from tpictl.auth import CredentialResolver
            resolver = CredentialResolver(
                token_cache,
                session=self.session,
                scheme=self.api_version.scheme,
                try_default_credentials=try_default_credentials,
                logger=self.logger,
            )
        self.resolver = resolver

    @property
    def base_url(self):
        return f"{self.api_version.scheme}://{self.host}"

    def new_request(self, path=API_BMC, method="GET"):
        """Create a descriptor for ``path`` on this BMC."""
        return RequestDescriptor(
            url=f"{self.base_url}{path}",
            host=self.host,
            method=method,
            headers={"User-Agent": user_agent()},
        )

    def send(self, descriptor):
        """Send ``descriptor``, re-authenticating at most once on HTTP 401.

        Returns the requests.Response (which may itself be a 401).

        Raises:
            BMCConnectionError: transport failure
            BMCAuthError: credential resolution failed after a 401
            TransferTimeout/TransferCancelled: the descriptor's deadline is over
        """
        token = self.token_cache.get(self.host)
        pre_authenticated = token is not None
        if pre_authenticated:
            self.logger.debug(f"Using cached token for {self.host}")

        resp = self._transmit(descriptor, token)
        if resp.status_code != 401:
            return resp

        if pre_authenticated:
            self.logger.debug(f"Got 401 with cached token for {self.host}, discarding it")
            self.token_cache.delete(self.host)
            return resp

        self.logger.debug(f"Got 401 from {self.host}, authenticating and retrying once")
        resp.close()
        token = self.resolver.resolve(self.host, self.username, self.password)
        resp = self._transmit(descriptor.clone(), token)
        if resp.status_code == 401:
            self.logger.debug(f"Got 401 again from {self.host}, discarding the token that was sent")
            self._discard_token(token)
        return resp

    def _discard_token(self, token):
        self.token_cache.delete(self.host)
        # resolve() may have handed out the legacy entry
        if self.token_cache.get(LEGACY_HOST) == token:
            self.token_cache.delete(LEGACY_HOST)

    def _transmit(self, descriptor, token=None):
        headers = dict(descriptor.headers)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if descriptor.content_type:
            headers["Content-Type"] = descriptor.content_type

        timeout = descriptor.effective_timeout()
        self.logger.debug(f"{descriptor.method} {descriptor.url} params={descriptor.params} timeout={timeout}")
        try:
            resp = self.session.request(
                descriptor.method,
                descriptor.url,
                params=descriptor.params or None,
                headers=headers,
                data=descriptor.body,
                json=descriptor.json_body,
                timeout=timeout,
            )
        except requests.exceptions.Timeout as e:
            if descriptor.deadline is not None and descriptor.deadline.expired():
                raise descriptor.deadline.error() from e
            raise BMCConnectionError(
                f"Request to {self.host} timed out after {timeout:.0f}s"
            ) from e
        except requests.exceptions.RequestException as e:
            raise BMCConnectionError(f"Connection error to {self.host}: {e}") from e

        self.logger.debug(f"Response status: {resp.status_code}")
        return resp

    def force_authenticate(self):
        """Drop any cached token and authenticate again. Returns the new token."""
        return self.resolver.force_authenticate(self.host, self.username, self.password)

    def check_response(self, resp, what="request"):
        """Raise if ``resp`` is not a successful BMC reply.

        Returns the decoded JSON body, or None when the body is not JSON.
        """
        if resp.status_code != 200:
            raise BMCHTTPError(
                f"{what} failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            result = resp.json()
        except ValueError:
            return None
        if isinstance(result, dict):
            error_msg = result.get("error")
            if isinstance(error_msg, str) and error_msg:
                raise BMCServerError(f"server returned error: {error_msg}", payload=result)
        return result
