# tests/test_protocol.py
"""Tests for SOCKS5 message framing."""

import pytest

from socks5d.protocol import (
    AddressType,
    Command,
    encode_method_selection,
    encode_user_pass_status,
    parse_greeting,
    parse_request,
    parse_user_pass,
)
from socks5d.robustness import AddressTypeNotSupported, ProtocolViolation

CONNECT_IPV4 = b"\x05\x01\x00\x01\x7f\x00\x00\x01\x1f\x90"


class TestGreeting:
    def test_complete(self):
        greeting, consumed = parse_greeting(b"\x05\x02\x00\x02")
        assert greeting.methods == (0x00, 0x02)
        assert consumed == 4

    def test_incomplete(self):
        assert parse_greeting(b"") is None
        assert parse_greeting(b"\x05") is None
        assert parse_greeting(b"\x05\x03\x00") is None

    def test_pipelined_surplus_not_consumed(self):
        greeting, consumed = parse_greeting(b"\x05\x01\x00" + CONNECT_IPV4)
        assert consumed == 3

    def test_bad_version_detected_from_first_byte(self):
        with pytest.raises(ProtocolViolation):
            parse_greeting(b"\x04")


class TestUserPass:
    def test_complete(self):
        request, consumed = parse_user_pass(b"\x01\x04user\x08password")
        assert request.username == b"user"
        assert request.password == b"password"
        assert request.credentials() == ("user", "password")
        assert consumed == 15

    def test_bytes_kept_as_sent(self):
        request, _ = parse_user_pass(b"\x01\x05alice\x08secret\xff\x80")
        assert request.password == b"secret\xff\x80"
        with pytest.raises(UnicodeDecodeError):
            request.credentials()

    def test_password_hidden_in_repr(self):
        request, _ = parse_user_pass(b"\x01\x01u\x06secret")
        assert "secret" not in repr(request)

    def test_incomplete(self):
        assert parse_user_pass(b"\x01\x04us") is None
        assert parse_user_pass(b"\x01\x04user") is None
        assert parse_user_pass(b"\x01\x04user\x08pass") is None

    def test_bad_version(self):
        with pytest.raises(ProtocolViolation):
            parse_user_pass(b"\x05\x04user\x08password")


class TestRequest:
    def test_connect_ipv4(self):
        request, consumed = parse_request(CONNECT_IPV4)
        assert request.command == Command.CONNECT
        assert request.address.atyp == AddressType.IPV4
        assert request.address.host == "127.0.0.1"
        assert request.address.port == 8080
        assert consumed == len(CONNECT_IPV4)

    def test_connect_domain_split(self):
        data = b"\x05\x01\x00\x03\x0bexample.com\x00\x50"
        for cut in range(len(data)):
            assert parse_request(data[:cut]) is None
        request, consumed = parse_request(data)
        assert request.address.host == "example.com"
        assert consumed == len(data)

    def test_bind_completes_without_address(self):
        request, consumed = parse_request(b"\x05\x02\x00\xfe\xfe")
        assert request.command == Command.BIND
        assert request.address is None
        assert consumed == 3

    def test_reserved_kept(self):
        request, _ = parse_request(b"\x05\x01\x01\x01\x7f\x00\x00\x01\x00\x50")
        assert request.reserved == 0x01

    def test_unknown_atyp(self):
        with pytest.raises(AddressTypeNotSupported):
            parse_request(b"\x05\x01\x00\x02\x00\x00")

    def test_bad_version(self):
        with pytest.raises(ProtocolViolation):
            parse_request(b"\x04\x01\x00\x01")


def test_encoders():
    assert encode_method_selection(0x02) == b"\x05\x02"
    assert encode_user_pass_status(0x01) == b"\x01\x01"
