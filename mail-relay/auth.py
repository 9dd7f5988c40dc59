"""
auth.py — Bearer Token Check
=============================
The relay has exactly one credential: a shared secret configured at
startup. Callers present it as "Authorization: Bearer <token>".

Every failure reports the same reason so a caller cannot tell a missing
header from a wrong token.
"""

import hmac

BEARER_PREFIX = 'Bearer '
REJECT_REASON = 'Malformed Token'


class AuthorizationError(Exception):
    """Missing, malformed or incorrect bearer token."""

    def __init__(self, detail: str):
        self.detail = detail  # for logs only, never sent to the caller
        super().__init__(REJECT_REASON)


def extract_bearer(header: str | None) -> str:
    if not header:
        raise AuthorizationError("no Authorization header")
    if not header.startswith(BEARER_PREFIX):
        raise AuthorizationError("Authorization header is not a Bearer credential")
    token = header[len(BEARER_PREFIX):]
    if not token:
        raise AuthorizationError("empty bearer token")
    return token


def check_bearer(header: str | None, expected: str) -> None:
    """Raise AuthorizationError unless the header carries exactly `expected`."""
    token = extract_bearer(header)
    if not hmac.compare_digest(token.encode('utf-8'), expected.encode('utf-8')):
        raise AuthorizationError("bearer token does not match")
