"""
transport.py — Relay Client
============================
This is the ONLY file that knows about SMTP. The handler above it speaks
RelayClient.relay() and RelayError, nothing else.

One call = one message = one fresh SMTPS connection:
  connect (implicit TLS, cert checked against the configured host)
  → authenticate (AUTH PLAIN identity/username/password)
  → declare-sender (MAIL FROM the authenticated identity)
  → declare-recipient (RCPT TO)
  → open-writer (DATA)
  → write-body (payload + terminating dot)
  → QUIT

No retries, no pooling, no shared mutable state. Every failure surfaces
immediately as TransportError or HandshakeError.
"""

import ssl
import base64
import logging
import smtplib
from contextlib import closing, contextmanager
from typing import Callable

from config import RelayConfig

log = logging.getLogger(__name__)

CRLF = '\r\n'

# Handshake step names, as they appear in HandshakeError.step
STEP_AUTHENTICATE     = 'authenticate'
STEP_DECLARE_SENDER   = 'declare-sender'
STEP_DECLARE_RECIPIENT = 'declare-recipient'
STEP_OPEN_WRITER      = 'open-writer'
STEP_WRITE_BODY       = 'write-body'


class RelayError(Exception):
    """Base for every failure the relay client reports."""


class TransportError(RelayError):
    """The encrypted connection to the upstream host could not be opened."""

    def __init__(self, address: str, cause: Exception):
        self.address = address
        self.cause = cause
        super().__init__(f"failed to establish secure connection to {address}: {_describe(cause)}")


class HandshakeError(RelayError):
    """A mail-submission step was refused or broke off."""

    def __init__(self, step: str, message: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(message)


def _describe(exc: Exception) -> str:
    if isinstance(exc, smtplib.SMTPResponseException):
        text = exc.smtp_error
        if isinstance(text, bytes):
            text = text.decode('utf-8', errors='replace')
        return f"{exc.smtp_code} {text}"
    return str(exc) or exc.__class__.__name__


def _expect(reply: tuple[int, bytes], *accepted: int) -> None:
    code, text = reply
    if code not in accepted:
        raise smtplib.SMTPResponseException(code, text)


@contextmanager
def _handshake_step(step: str, context: str):
    try:
        yield
    except (smtplib.SMTPException, OSError, ValueError) as e:
        raise HandshakeError(step, f"{context}: {_describe(e)}", e) from e


# ── Message construction ──────────────────────────────────────────────────────

def build_message(sender: str, recipient: str, subject: str, body: str) -> str:
    """
    Plain RFC 5322 payload: From, To, Subject (always in that order), a
    blank line, the body, and a closing CRLF.
    """
    headers = [
        ('From', sender),
        ('To', recipient),
        ('Subject', subject),
    ]
    lines = [f"{name}: {value}{CRLF}" for name, value in headers]
    return ''.join(lines) + CRLF + body + CRLF


def parse_message(payload: str) -> tuple[dict[str, str], str]:
    """Inverse of build_message. Returns (headers, body)."""
    head, sep, body = payload.partition(CRLF + CRLF)
    if not sep:
        raise ValueError("payload has no header/body separator")
    headers = {}
    for line in head.split(CRLF):
        name, _, value = line.partition(': ')
        headers[name] = value
    if body.endswith(CRLF):
        body = body[:-len(CRLF)]
    return headers, body


def _encode_data(payload: str) -> bytes:
    """Dot-stuff, normalise line endings to CRLF and add the end-of-data marker."""
    data = smtplib.quotedata(payload).encode('utf-8')
    if not data.endswith(b'\r\n'):
        data += b'\r\n'
    return data + b'.\r\n'


def plain_auth_token(identity: str, username: str, password: str) -> str:
    """
    RFC 4616 PLAIN response, UTF-8 then base64. smtplib.SMTP.auth would
    encode it as ASCII and refuse non-ASCII credentials.
    """
    raw = f"{identity}\0{username}\0{password}".encode('utf-8')
    return base64.b64encode(raw).decode('ascii')


def _auth_plain(smtp, token: str) -> None:
    reply = smtp.docmd('AUTH', 'PLAIN ' + token)
    if reply[0] == 334:
        # Server ignored the initial response and asked for it again
        reply = smtp.docmd(token)
    code, text = reply
    # 503: already authenticated on this session
    if code not in (235, 503):
        raise smtplib.SMTPAuthenticationError(code, text)


# ── Relay client ──────────────────────────────────────────────────────────────

class RelayClient:
    """
    Relays single messages through the configured upstream. Holds only the
    frozen config, so one instance is shared safely by concurrent requests.

    `connect` builds the SMTP connection; it defaults to smtplib.SMTP_SSL
    and is swapped for a stub in tests.
    """

    def __init__(self, config: RelayConfig, connect: Callable = smtplib.SMTP_SSL):
        self.config = config
        self._connect = connect

    def relay(self, recipient: str, subject: str, body: str) -> None:
        cfg = self.config
        payload = build_message(cfg.sender, recipient, subject, body)

        log.info(f"Connecting to SMTPS {cfg.smtp_address} for {recipient}")
        try:
            conn = self._connect(
                cfg.smtp_host,
                cfg.smtp_port,
                timeout=cfg.smtp_timeout,
                context=ssl.create_default_context(),
            )
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(cfg.smtp_address, e) from e

        # Closed on every path from here on. SMTP.__exit__ raises on a
        # non-221 QUIT reply, so closing() rather than `with conn`.
        with closing(conn) as smtp:
            self._handshake(smtp, recipient, payload)

    def _handshake(self, smtp, recipient: str, payload: str) -> None:
        cfg = self.config

        with _handshake_step(STEP_AUTHENTICATE,
                             f"failed to authenticate with {cfg.smtp_host} as {cfg.smtp_username}"):
            smtp.ehlo_or_helo_if_needed()
            _auth_plain(smtp, plain_auth_token(cfg.smtp_identity, cfg.smtp_username, cfg.smtp_password))
        log.debug(f"Authenticated with {cfg.smtp_host} as {cfg.smtp_username}")

        with _handshake_step(STEP_DECLARE_SENDER, f"failed to indicate mail from {cfg.smtp_identity}"):
            _expect(smtp.mail(cfg.smtp_identity), 250)

        with _handshake_step(STEP_DECLARE_RECIPIENT, f"failed to indicate mail to {recipient}"):
            _expect(smtp.rcpt(recipient), 250, 251)

        with _handshake_step(STEP_OPEN_WRITER, "failed to get data writer"):
            _expect(smtp.docmd('data'), 354)

        with _handshake_step(STEP_WRITE_BODY, "failed to write message data"):
            smtp.send(_encode_data(payload))
            _expect(smtp.getreply(), 250)
        log.debug(f"Message data accepted by {cfg.smtp_host} for {recipient}")

        # The message is queued upstream once DATA is accepted; a failed
        # QUIT does not undo that.
        try:
            smtp.quit()
        except (smtplib.SMTPException, OSError) as e:
            log.warning(f"QUIT to {cfg.smtp_address} failed after delivery to {recipient}: {_describe(e)}")


def transport_summary(config: RelayConfig) -> dict:
    """Non-secret SMTP settings for the health endpoint."""
    return {
        "host":     config.smtp_host,
        "port":     config.smtp_port,
        "from":     config.sender,
        "identity": config.smtp_identity,
        "tls":      "implicit",
        "timeout":  config.smtp_timeout,
    }
