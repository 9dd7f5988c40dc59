import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.dirname(os.path.dirname(__file__))))
from config import RelayConfig
from transport import RelayError


TEST_TOKEN = "secret"


class StubRelayClient:
    """Records every relay call; optionally fails with a given RelayError."""

    def __init__(self, error: RelayError | None = None):
        self.calls = []
        self.error = error

    def relay(self, recipient, subject, body):
        self.calls.append((recipient, subject, body))
        if self.error is not None:
            raise self.error


@pytest.fixture
def relay_config():
    return RelayConfig(
        auth_token=TEST_TOKEN,
        smtp_host="smtp.example.com",
        smtp_port=465,
        smtp_username="relay-user",
        smtp_password="hunter2",
        smtp_identity="relay@example.com",
        sender="noreply@example.com",
        smtp_timeout=5.0,
        max_body_bytes=1024,
    )


@pytest.fixture
def stub_client():
    return StubRelayClient()
