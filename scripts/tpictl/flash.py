"""Image transfer to cluster nodes and BMC firmware upgrade."""

import hashlib
import logging
import os

from tpictl import (
    API_FIRMWARE,
    API_UPLOAD,
    MAX_NODE,
    MIN_NODE,
    UPLOAD_TIMEOUT,
    WATCH_TIMEOUT,
)
from tpictl.client import (
    BMCConnectionError,
    BMCError,
    BMCHTTPError,
    BMCProtocolError,
    BMCServerError,
    ChecksumMismatch,
)
from tpictl.progress import Clock, Deadline, TransferState, watch_transfer

CHUNK_SIZE = 1024 * 1024
GIB = 1024 * 1024 * 1024


def file_sha256(fileobj):
    """Hex SHA-256 of ``fileobj`` from its current position to EOF."""
    h = hashlib.sha256()
    for chunk in iter(lambda: fileobj.read(CHUNK_SIZE), b""):
        h.update(chunk)
    return h.hexdigest()


def validate_node(node):
    """Check a user-level node number and return its 0-based wire index."""
    if not MIN_NODE <= node <= MAX_NODE:
        raise BMCError(f"invalid node number: {node} (must be {MIN_NODE}-{MAX_NODE})")
    return node - 1


def verify_checksum(fileobj, sha256):
    """Compare ``fileobj`` against ``sha256`` and rewind it.

    Raises ChecksumMismatch before any network traffic happens.
    """
    fileobj.seek(0)
    calculated = file_sha256(fileobj)
    fileobj.seek(0)
    if calculated.lower() != sha256.strip().lower():
        raise ChecksumMismatch(sha256, calculated)
    return calculated


class ImageUploader:
    """Two-phase upload: negotiate a transfer handle, then send the bytes."""

    INITIATE_ATTEMPTS = 3
    INITIATE_RETRY_DELAY = 3
    UPLOAD_ATTEMPTS = 3
    UPLOAD_RETRY_DELAY = 5

    def __init__(self, client, clock=None, logger=None):
        self.client = client
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger(__name__)
        self.state = TransferState.INITIATING

    def begin_transfer(self, node, file_name, file_length, sha256=None, skip_crc=False):
        """Ask the BMC for a transfer handle.

        Retries transport errors, non-200 replies and replies without a
        numeric ``handle``.

        Returns the integer handle.
        """
        wire_node = validate_node(node)
        self.state = TransferState.INITIATING

        req = self.client.new_request()
        req.add_param("opt", "set")
        req.add_param("type", "flash")
        req.add_param("file", file_name)
        req.add_param("length", file_length)
        req.add_param("node", wire_node)
        if sha256:
            req.add_param("sha256", sha256)
        if skip_crc:
            req.add_param("skip_crc", "1")

        last_error = None
        for attempt in range(1, self.INITIATE_ATTEMPTS + 1):
            if attempt > 1:
                self.logger.warning(
                    f"Error initializing flash operation: {last_error}. "
                    f"Retrying in {self.INITIATE_RETRY_DELAY} seconds..."
                )
                self.clock.sleep(self.INITIATE_RETRY_DELAY)
            try:
                return self._request_handle(req.clone())
            except (BMCConnectionError, BMCHTTPError, BMCProtocolError) as e:
                last_error = e

        raise last_error.with_context("flash initiate", self.INITIATE_ATTEMPTS)

    def _request_handle(self, req):
        resp = self.client.send(req)
        if resp.status_code != 200:
            raise BMCHTTPError(
                f"failed to initiate flash operation: {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise BMCProtocolError(f"failed to parse response: {e}") from e

        handle = data.get("handle") if isinstance(data, dict) else None
        if isinstance(handle, bool) or not isinstance(handle, (int, float)):
            raise BMCProtocolError("invalid response: missing handle")
        return int(handle)

    def upload_bytes(self, handle, fileobj, file_name):
        """POST the file contents as multipart field ``file`` to the handle."""
        self.state = TransferState.UPLOADING
        fileobj.seek(0)
        req = self.client.new_request(f"{API_UPLOAD}/{handle}", method="POST")
        req.set_multipart("file", file_name, fileobj.read())
        req.timeout = UPLOAD_TIMEOUT

        last_error = None
        for attempt in range(1, self.UPLOAD_ATTEMPTS + 1):
            if attempt > 1:
                self.logger.warning(
                    f"Error uploading file: {last_error}. "
                    f"Retrying in {self.UPLOAD_RETRY_DELAY} seconds..."
                )
                self.clock.sleep(self.UPLOAD_RETRY_DELAY)
            try:
                resp = self.client.send(req.clone())
            except BMCConnectionError as e:
                last_error = e
                continue
            if resp.status_code == 200:
                return
            last_error = BMCHTTPError(
                f"failed to upload file: {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        raise last_error.with_context("flash upload", self.UPLOAD_ATTEMPTS)

    def start(self, node, fileobj, file_name, file_length, sha256=None, skip_crc=False):
        """Verify, negotiate and upload. Returns the transfer handle."""
        validate_node(node)
        if sha256:
            verify_checksum(fileobj, sha256)
        fileobj.seek(0)

        handle = self.begin_transfer(node, file_name, file_length, sha256, skip_crc)
        self.logger.info(f"Started transfer of {file_length / GIB:.2f} GiB with handle {handle}")
        self.upload_bytes(handle, fileobj, file_name)
        return handle


def flash_node(client, node, image_path, sha256=None, skip_crc=False,
               reporter=None, clock=None, deadline=None, logger=None):
    """Flash ``image_path`` onto ``node`` and wait for the BMC to finish.

    Returns the final TransferState (DONE on success).
    """
    logger = logger or logging.getLogger(__name__)
    clock = clock or Clock()
    validate_node(node)

    file_name = os.path.basename(image_path)
    file_length = os.path.getsize(image_path)
    with open(image_path, "rb") as f:
        uploader = ImageUploader(client, clock=clock, logger=logger)
        handle = uploader.start(node, f, file_name, file_length, sha256, skip_crc)

    if deadline is None:
        deadline = Deadline(WATCH_TIMEOUT, clock)
    return watch_transfer(
        client, handle, file_length,
        deadline=deadline, reporter=reporter, clock=clock, logger=logger,
    )


def flash_node_local(client, node, image_path, clock=None, logger=None):
    """Flash ``node`` from an image that already lives on the BMC filesystem."""
    logger = logger or logging.getLogger(__name__)
    clock = clock or Clock()
    if not image_path:
        raise BMCError("image path is required")
    wire_node = validate_node(node)

    req = client.new_request()
    req.add_param("opt", "set")
    req.add_param("type", "update")
    req.add_param("node", wire_node)
    req.add_param("path", image_path)

    attempts = ImageUploader.INITIATE_ATTEMPTS
    last_error = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            logger.warning(f"Error in response: {last_error}. Retrying in 3 seconds...")
            clock.sleep(ImageUploader.INITIATE_RETRY_DELAY)
        try:
            client.check_response(client.send(req.clone()), "local flash")
            return
        except (BMCConnectionError, BMCHTTPError, BMCServerError) as e:
            last_error = e

    raise last_error.with_context("local flash", attempts)


def upgrade_firmware(client, file_path, sha256=None):
    """Upload a BMC firmware image to /api/firmware."""
    file_name = os.path.basename(file_path)
    with open(file_path, "rb") as f:
        if sha256:
            verify_checksum(f, sha256)
        req = client.new_request(API_FIRMWARE, method="POST")
        req.set_multipart("firmware", file_name, f.read())
    req.timeout = UPLOAD_TIMEOUT
    client.check_response(client.send(req), "firmware upgrade")
