"""Test the SMTPS relay client against a mocked SMTP connection."""

import base64
import dataclasses
import smtplib
import ssl
from unittest.mock import MagicMock, call

import pytest

from transport import (
    HandshakeError, RelayClient, TransportError,
    build_message, parse_message, plain_auth_token, _encode_data,
)


def make_smtp():
    """A mock SMTP session whose every step succeeds."""
    smtp = MagicMock(name="smtp")
    smtp.mail.return_value = (250, b"OK")
    smtp.rcpt.return_value = (250, b"OK")
    # docmd replies keyed by command; anything else is an AUTH continuation
    smtp.replies = {
        "auth": (235, b"Authentication successful"),
        "data": (354, b"End data with <CR><LF>.<CR><LF>"),
        "continue": (235, b"Authentication successful"),
    }
    smtp.docmd.side_effect = lambda cmd, args="": smtp.replies.get(cmd.lower(), smtp.replies["continue"])
    smtp.getreply.return_value = (250, b"Queued")
    return smtp


@pytest.fixture
def smtp():
    return make_smtp()


@pytest.fixture
def connect(smtp):
    return MagicMock(name="connect", return_value=smtp)


def test_build_message_layout():
    payload = build_message("from@example.com", "to@example.com", "hi", "hello")
    assert payload == (
        "From: from@example.com\r\n"
        "To: to@example.com\r\n"
        "Subject: hi\r\n"
        "\r\n"
        "hello\r\n"
    )


def test_message_round_trip():
    body = "line one\r\nline two\r\n\r\n.starts with a dot"
    payload = build_message("a@example.com", "b@example.com", "Re: c", body)
    headers, parsed_body = parse_message(payload)
    assert headers == {"From": "a@example.com", "To": "b@example.com", "Subject": "Re: c"}
    assert parsed_body == body


def test_encode_data_stuffs_dots_and_terminates():
    data = _encode_data("Subject: x\r\n\r\n.hidden\nnext\r\n")
    assert data == b"Subject: x\r\n\r\n..hidden\r\nnext\r\n.\r\n"


def test_encode_data_is_utf8():
    assert _encode_data("café") == "café\r\n.\r\n".encode("utf-8")


def test_relay_success(relay_config, connect, smtp):
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")

    args, kwargs = connect.call_args
    assert args == ("smtp.example.com", 465)
    assert kwargs["timeout"] == 5.0
    assert isinstance(kwargs["context"], ssl.SSLContext)
    assert kwargs["context"].check_hostname

    smtp.ehlo_or_helo_if_needed.assert_called_once()
    smtp.mail.assert_called_once_with("relay@example.com")
    smtp.rcpt.assert_called_once_with("u@example.com")
    assert smtp.docmd.call_args_list[-1] == call("data")
    sent = smtp.send.call_args[0][0]
    assert sent.startswith(b"From: noreply@example.com\r\nTo: u@example.com\r\nSubject: hi\r\n\r\nhello")
    assert sent.endswith(b"\r\n.\r\n")
    smtp.quit.assert_called_once()
    smtp.close.assert_called_once()


def test_auth_plain_uses_identity_username_password(relay_config, connect, smtp):
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")

    command, argument = smtp.docmd.call_args_list[0][0]
    assert command == "AUTH"
    mechanism, token = argument.split(" ")
    assert mechanism == "PLAIN"
    assert base64.b64decode(token) == b"relay@example.com\x00relay-user\x00hunter2"


def test_auth_plain_encodes_non_ascii_as_utf8(relay_config, smtp):
    cfg = dataclasses.replace(relay_config, smtp_username="jörg", smtp_password="pässword")
    RelayClient(cfg, connect=MagicMock(return_value=smtp)).relay("u@example.com", "hi", "hello")

    token = smtp.docmd.call_args_list[0][0][1].split(" ")[1]
    assert base64.b64decode(token) == "relay@example.com\0jörg\0pässword".encode("utf-8")
    smtp.send.assert_called_once()


def test_auth_plain_answers_a_bare_challenge(relay_config, connect, smtp):
    smtp.replies["auth"] = (334, b"")
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")

    token = plain_auth_token("relay@example.com", "relay-user", "hunter2")
    assert smtp.docmd.call_args_list[:2] == [call("AUTH", "PLAIN " + token), call(token)]
    smtp.send.assert_called_once()

def test_envelope_sender_differs_from_header_from(relay_config, connect, smtp):
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert smtp.mail.call_args[0][0] == relay_config.smtp_identity
    assert b"From: " + relay_config.sender.encode() in smtp.send.call_args[0][0]


@pytest.mark.parametrize("exc", [
    ConnectionRefusedError("connection refused"),
    ssl.SSLCertVerificationError("certificate verify failed"),
    smtplib.SMTPConnectError(421, b"busy"),
])
def test_connect_failure_is_transport_error(relay_config, exc):
    connect = MagicMock(side_effect=exc)
    with pytest.raises(TransportError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.address == "smtp.example.com:465"
    assert "smtp.example.com:465" in str(info.value)
    assert info.value.cause is exc


def test_auth_failure(relay_config, connect, smtp):
    smtp.replies["auth"] = (535, b"bad credentials")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.step == "authenticate"
    assert "smtp.example.com" in str(info.value)
    assert "relay-user" in str(info.value)
    assert "535 bad credentials" in str(info.value)
    assert "hunter2" not in str(info.value)
    smtp.mail.assert_not_called()
    smtp.close.assert_called_once()


def test_sender_refused(relay_config, connect, smtp):
    smtp.mail.return_value = (553, b"sender not owned")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.step == "declare-sender"
    assert "relay@example.com" in str(info.value)
    smtp.rcpt.assert_not_called()


def test_recipient_refused(relay_config, connect, smtp):
    smtp.rcpt.return_value = (550, b"no such user")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("ghost@example.com", "hi", "hello")
    assert info.value.step == "declare-recipient"
    assert "ghost@example.com" in str(info.value)
    assert "550 no such user" in str(info.value)
    assert call("data") not in smtp.docmd.call_args_list
    smtp.close.assert_called_once()


def test_recipient_forwarded_is_accepted(relay_config, connect, smtp):
    smtp.rcpt.return_value = (251, b"User not local; will forward")
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    smtp.send.assert_called_once()


def test_data_refused(relay_config, connect, smtp):
    smtp.replies["data"] = (554, b"no valid recipients")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.step == "open-writer"
    smtp.send.assert_not_called()


def test_body_rejected(relay_config, connect, smtp):
    smtp.getreply.return_value = (552, b"message too big")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.step == "write-body"
    smtp.quit.assert_not_called()
    smtp.close.assert_called_once()


def test_disconnect_mid_body(relay_config, connect, smtp):
    smtp.send.side_effect = smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
    with pytest.raises(HandshakeError) as info:
        RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    assert info.value.step == "write-body"
    assert isinstance(info.value.cause, smtplib.SMTPServerDisconnected)


def test_failed_quit_still_succeeds(relay_config, connect, smtp):
    smtp.quit.side_effect = smtplib.SMTPServerDisconnected("gone")
    RelayClient(relay_config, connect=connect).relay("u@example.com", "hi", "hello")
    smtp.close.assert_called_once()


def test_each_call_opens_a_fresh_connection(relay_config, connect):
    client = RelayClient(relay_config, connect=connect)
    client.relay("a@example.com", "1", "one")
    client.relay("b@example.com", "2", "two")
    assert connect.call_count == 2
