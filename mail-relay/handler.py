"""
handler.py — Mail Request Handler
==================================
Turns one inbound POST /mail into exactly one (RelayResult, status).
Each step is a rejection point. The relay is the last step.

Steps:
1. Authorize bearer token                → 401
2. Read and decode JSON body (bounded)   → 400 (too large, not JSON) / 500 (read error)
3. Shape-check into a RelayRequest       → 400
4. Relay through the transport layer     → 500
5. Success                               → 200

Nothing raised in here escapes: every per-request error becomes a
structured failure result. The response never carries the token or any
SMTP credential.
"""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Callable

from werkzeug.exceptions import BadRequest, RequestEntityTooLarge

import auth
import transport
from config import RelayConfig

log = logging.getLogger(__name__)

REQUEST_FIELDS = ('to', 'subject', 'body', 'ip')


class RequestFormatError(Exception):
    """Body missing, too large, not JSON, or not the expected shape."""


class SerializationError(Exception):
    """The response result could not be encoded."""


@dataclass
class RelayRequest:
    to: str
    subject: str
    body: str
    ip: str = ''  # informational, only ever logged


@dataclass
class RelayResult:
    success: bool
    msg: str = ''


def _fail(msg: str, status: int) -> tuple[RelayResult, int]:
    return RelayResult(success=False, msg=msg), status


def load_json(read_json: Callable[[], object], limit: int) -> object:
    """
    Run the framework's body reader. Oversized bodies are rejected rather
    than silently cut short; undecodable ones become RequestFormatError.
    """
    try:
        return read_json()
    except RequestEntityTooLarge as e:
        raise RequestFormatError(f"request body exceeds {limit} bytes") from e
    except BadRequest as e:
        raise RequestFormatError(e.description or str(e)) from e
    except (ValueError, RecursionError) as e:
        # RecursionError: JSON nested deeper than the interpreter can decode
        raise RequestFormatError(str(e) or e.__class__.__name__) from e


def parse_request(data: object) -> RelayRequest:
    """Shape-check decoded JSON. Missing fields default to empty strings."""
    if not isinstance(data, dict):
        raise RequestFormatError("request body must be a JSON object")

    fields = {}
    for name in REQUEST_FIELDS:
        value = data.get(name, '')
        if not isinstance(value, str):
            raise RequestFormatError(f"field '{name}' must be a string")
        fields[name] = value

    # These end up as header lines; a line break would inject new headers
    for name in ('to', 'subject'):
        if '\r' in fields[name] or '\n' in fields[name]:
            raise RequestFormatError(f"field '{name}' must not contain line breaks")

    return RelayRequest(**fields)


def process(authorization: str | None, read_json: Callable[[], object], config: RelayConfig,
            client: transport.RelayClient, remote_addr: str | None = None) -> tuple[RelayResult, int]:
    """
    `read_json` is only called once the token has been accepted, so an
    unauthorized caller never gets its body read.
    """
    # ── Step 1: Authorize ─────────────────────────────────────────────────────
    try:
        auth.check_bearer(authorization, config.auth_token)
    except auth.AuthorizationError as e:
        log.warning(f"Unauthorized request from {remote_addr or 'unknown'}: {e.detail}")
        return _fail(str(e), 401)

    # ── Step 2: Read and decode body ──────────────────────────────────────────
    try:
        data = load_json(read_json, config.max_body_bytes)
    except RequestFormatError as e:
        log.warning(f"Rejected request from {remote_addr or 'unknown'}: {e}")
        return _fail(f"failed to parse request: {e}", 400)
    except OSError as e:
        log.error(f"Failed to read request from {remote_addr or 'unknown'}: {e}")
        return _fail(f"failed to read request: {e}", 500)

    # ── Step 3: Parse ─────────────────────────────────────────────────────────
    try:
        req = parse_request(data)
    except RequestFormatError as e:
        log.warning(f"Rejected request from {remote_addr or 'unknown'}: {e}")
        return _fail(f"failed to parse request: {e}", 400)

    # ── Step 4: Relay ─────────────────────────────────────────────────────────
    try:
        client.relay(req.to, req.subject, req.body)
    except transport.RelayError as e:
        log.error(f"Failed to send mail to {req.to}: {e}")
        return _fail(f"failed to send mail to {req.to}: {e}", 500)

    # ── Step 5: Done ──────────────────────────────────────────────────────────
    log.info(f"Successfully sent mail to {req.to}, from {req.ip or 'unknown'}")
    return RelayResult(success=True), 200


def serialize(result: RelayResult) -> str:
    try:
        return json.dumps(asdict(result), separators=(',', ':'))
    except (TypeError, ValueError) as e:
        raise SerializationError(str(e)) from e


def render(result: RelayResult, status: int) -> tuple[str, int, str]:
    """
    Encode a result as (body, status, mimetype). If encoding fails the
    caller still gets an answer: a 500 with the error as plain text.
    """
    try:
        return serialize(result), status, 'application/json'
    except SerializationError as e:
        log.error(f"Failed to serialize response: {e}")
        return f"failed to serialize response: {e}", 500, 'text/plain'
