"""
config.py — Process Configuration
==================================
Everything the service needs from the environment is read here, once, at
startup. The result is an immutable RelayConfig handed to the transport
and handler layers. Nothing else in the service touches os.environ.

Required:
  HG_AUTH_TOKEN     — shared secret expected in "Authorization: Bearer ..."
  HG_SMTP_HOST      — upstream SMTPS host (also the TLS server name)
  HG_SMTP_PORT      — upstream port, 1-65535
  HG_SMTP_USERNAME  — AUTH username
  HG_SMTP_PASSWORD  — AUTH password
  HG_SMTP_IDENTITY  — AUTH identity; also the envelope sender (MAIL FROM)
  HG_SMTP_FROM      — header From address shown to the recipient

Optional:
  HG_LISTEN_ADDR    — host:port to listen on (default :8080, all interfaces)
  HG_SMTP_TIMEOUT   — socket timeout in seconds (default 30)
  HG_MAX_BODY_BYTES — largest accepted request body (default 65536)
  HG_LOG_LEVEL      — logging level name (default INFO)
"""

import os
import logging
from dataclasses import dataclass
from typing import Mapping

AUTH_TOKEN_KEY    = 'HG_AUTH_TOKEN'
SMTP_HOST_KEY     = 'HG_SMTP_HOST'
SMTP_PORT_KEY     = 'HG_SMTP_PORT'
SMTP_USERNAME_KEY = 'HG_SMTP_USERNAME'
SMTP_PASSWORD_KEY = 'HG_SMTP_PASSWORD'
SMTP_IDENTITY_KEY = 'HG_SMTP_IDENTITY'
SMTP_FROM_KEY     = 'HG_SMTP_FROM'
LISTEN_ADDR_KEY   = 'HG_LISTEN_ADDR'
SMTP_TIMEOUT_KEY  = 'HG_SMTP_TIMEOUT'
MAX_BODY_KEY      = 'HG_MAX_BODY_BYTES'
LOG_LEVEL_KEY     = 'HG_LOG_LEVEL'

DEFAULT_LISTEN_ADDR    = ':8080'
DEFAULT_SMTP_TIMEOUT   = 30.0
DEFAULT_MAX_BODY_BYTES = 64 * 1024
DEFAULT_LOG_LEVEL      = 'INFO'


class ConfigurationError(Exception):
    """A required setting is missing or unparseable. Fatal at startup."""


@dataclass(frozen=True)
class RelayConfig:
    auth_token: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_identity: str
    sender: str
    listen_host: str = '0.0.0.0'
    listen_port: int = 8080
    smtp_timeout: float = DEFAULT_SMTP_TIMEOUT
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def smtp_address(self) -> str:
        return f"{self.smtp_host}:{self.smtp_port}"

    def __repr__(self) -> str:
        # Never let the secret or the password leak into logs or tracebacks
        return (f"RelayConfig(smtp={self.smtp_address}, username={self.smtp_username!r}, "
                f"identity={self.smtp_identity!r}, sender={self.sender!r}, "
                f"listen={self.listen_host}:{self.listen_port})")


def _require(environ: Mapping[str, str], key: str) -> str:
    if key not in environ:
        raise ConfigurationError(f"unable to read environment variable {key}")
    return environ[key]


def parse_port(value: str, key: str) -> int:
    """Parse a decimal TCP port in the 16-bit range."""
    try:
        port = int(value.strip(), 10)
    except ValueError:
        raise ConfigurationError(f'failed to convert {key}="{value}" to a port number') from None
    if not 0 < port <= 0xFFFF:
        raise ConfigurationError(f'{key}="{value}" is outside the port range 1-65535')
    return port


def parse_listen_addr(value: str) -> tuple[str, int]:
    """
    Split "host:port" into its parts. An empty host means every interface,
    so ":8080" listens on 0.0.0.0:8080. Bracketed IPv6 hosts are accepted.
    """
    host, sep, port = value.rpartition(':')
    if not sep:
        raise ConfigurationError(f'{LISTEN_ADDR_KEY}="{value}" must be in host:port form')
    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    return host or '0.0.0.0', parse_port(port, LISTEN_ADDR_KEY)


def _positive(environ: Mapping[str, str], key: str, default, kind):
    raw = environ.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ConfigurationError(f'failed to convert {key}="{raw}" to {kind.__name__}') from None
    if not value > 0:
        raise ConfigurationError(f'{key}="{raw}" must be positive')
    return value


def load_config(environ: Mapping[str, str] | None = None) -> RelayConfig:
    """
    Build a RelayConfig from the environment (or an explicit mapping, for
    tests). Raises ConfigurationError on the first missing or bad value.
    """
    if environ is None:
        environ = os.environ

    auth_token = _require(environ, AUTH_TOKEN_KEY)
    smtp_host = _require(environ, SMTP_HOST_KEY)
    smtp_port = parse_port(_require(environ, SMTP_PORT_KEY), SMTP_PORT_KEY)
    smtp_username = _require(environ, SMTP_USERNAME_KEY)
    smtp_password = _require(environ, SMTP_PASSWORD_KEY)
    smtp_identity = _require(environ, SMTP_IDENTITY_KEY)
    sender = _require(environ, SMTP_FROM_KEY)

    if not auth_token:
        # An empty secret would make "Bearer " a valid credential
        raise ConfigurationError(f"{AUTH_TOKEN_KEY} must not be empty")
    if not smtp_host:
        raise ConfigurationError(f"{SMTP_HOST_KEY} must not be empty")

    listen_host, listen_port = parse_listen_addr(environ.get(LISTEN_ADDR_KEY) or DEFAULT_LISTEN_ADDR)

    log_level = (environ.get(LOG_LEVEL_KEY) or DEFAULT_LOG_LEVEL).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigurationError(f'{LOG_LEVEL_KEY}="{log_level}" is not a logging level')

    return RelayConfig(
        auth_token=auth_token,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_username=smtp_username,
        smtp_password=smtp_password,
        smtp_identity=smtp_identity,
        sender=sender,
        listen_host=listen_host,
        listen_port=listen_port,
        smtp_timeout=_positive(environ, SMTP_TIMEOUT_KEY, DEFAULT_SMTP_TIMEOUT, float),
        max_body_bytes=_positive(environ, MAX_BODY_KEY, DEFAULT_MAX_BODY_BYTES, int),
        log_level=log_level,
    )
