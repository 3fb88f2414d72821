# tests/test_udp_relay.py
"""Tests for the UDP ASSOCIATE relay."""

import asyncio
import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from socks5d.address import Address, UdpDatagram, encode_udp_datagram
from socks5d.config import ServerConfig
from socks5d.protocol import AddressType
from socks5d.robustness import ErrorType, ResolutionFailure
from socks5d.udp_relay import UdpRelay

CLIENT = ("127.0.0.1", 40000)


class EchoProtocol(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(b"echo:" + data, addr)


def make_relay(**config):
    relay = UdpRelay(ServerConfig(**config))
    transport = MagicMock()
    transport.is_closing.return_value = False
    relay.connection_made(transport)
    return relay, transport


class TestIngress:
    @pytest.mark.parametrize(
        "data",
        [
            b"\x00\x00\x00\x01\x7f\x00\x00\x01\x00",
            b"\x00\x00\x01\x01\x7f\x00\x00\x01\x00\x35data",
            b"\x00\x00\x00\x07\x7f\x00\x00\x01\x00\x35data",
        ],
    )
    @pytest.mark.asyncio
    async def test_malformed_dropped(self, data):
        relay, transport = make_relay()
        with patch.object(relay, "relay_datagram", new_callable=AsyncMock) as relay_datagram:
            relay.datagram_received(data, CLIENT)
            await asyncio.sleep(0)
        relay_datagram.assert_not_called()
        transport.sendto.assert_not_called()

    @pytest.mark.asyncio
    async def test_ipv6_destination_dropped(self):
        relay, transport = make_relay()
        data = encode_udp_datagram(Address.from_host("::1", 53), b"query")
        with patch.object(relay, "relay_datagram", new_callable=AsyncMock) as relay_datagram:
            relay.datagram_received(data, CLIENT)
            await asyncio.sleep(0)
        relay_datagram.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_datagram_dispatched(self):
        relay, _ = make_relay()
        data = encode_udp_datagram(Address(AddressType.IPV4, "127.0.0.1", 53), b"query")
        with patch.object(relay, "relay_datagram", new_callable=AsyncMock) as relay_datagram:
            relay.datagram_received(data, CLIENT)
            await asyncio.sleep(0)
        datagram, client_addr = relay_datagram.await_args.args
        assert datagram.payload == b"query"
        assert datagram.address.port == 53
        assert client_addr == CLIENT


class TestRelayDatagram:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        loop = asyncio.get_running_loop()
        echo_transport, _ = await loop.create_datagram_endpoint(EchoProtocol, local_addr=("127.0.0.1", 0))
        echo_port = echo_transport.get_extra_info("sockname")[1]
        relay, transport = make_relay(udp_timeout=2)
        try:
            destination = Address(AddressType.IPV4, "127.0.0.1", echo_port)
            await relay.relay_datagram(UdpDatagram(0, destination, b"ping"), CLIENT)
        finally:
            echo_transport.close()
        transport.sendto.assert_called_once_with(
            encode_udp_datagram(destination, b"echo:ping"), CLIENT
        )

    @pytest.mark.asyncio
    async def test_no_response_times_out(self):
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(("127.0.0.1", 0))
        relay, transport = make_relay(udp_timeout=0.1)
        try:
            destination = Address(AddressType.IPV4, "127.0.0.1", silent.getsockname()[1])
            await relay.relay_datagram(UdpDatagram(0, destination, b"ping"), CLIENT)
        finally:
            silent.close()
        transport.sendto.assert_not_called()

    @pytest.mark.asyncio
    async def test_unresolvable_domain_dropped(self):
        relay, transport = make_relay()
        relay.resolver = AsyncMock()
        relay.resolver.resolve_a.side_effect = ResolutionFailure("nope", ErrorType.RESOLUTION)
        destination = Address(AddressType.DOMAIN, "nowhere.invalid", 53)
        await relay.relay_datagram(UdpDatagram(0, destination, b"ping"), CLIENT)
        transport.sendto.assert_not_called()

    @pytest.mark.asyncio
    async def test_listener_closed_before_response(self):
        loop = asyncio.get_running_loop()
        echo_transport, _ = await loop.create_datagram_endpoint(EchoProtocol, local_addr=("127.0.0.1", 0))
        echo_port = echo_transport.get_extra_info("sockname")[1]
        relay, transport = make_relay(udp_timeout=2)
        transport.is_closing.return_value = True
        try:
            destination = Address(AddressType.IPV4, "127.0.0.1", echo_port)
            await relay.relay_datagram(UdpDatagram(0, destination, b"ping"), CLIENT)
        finally:
            echo_transport.close()
        transport.sendto.assert_not_called()


@pytest.mark.asyncio
async def test_connection_lost_cancels_exchanges():
    relay, _ = make_relay()
    task = asyncio.get_running_loop().create_task(asyncio.sleep(3600))
    relay._tasks.add(task)
    relay.connection_lost(None)
    await asyncio.sleep(0)
    assert task.cancelled()
    assert relay.transport is None


@pytest.mark.asyncio
async def test_failed_exchange_logged_with_plain_log_object():
    log = MagicMock(spec=["debug", "info", "warning", "error"])
    relay = UdpRelay(ServerConfig(), log=log)

    async def explode():
        raise RuntimeError("boom")

    task = asyncio.get_running_loop().create_task(explode())
    relay._tasks.add(task)
    await asyncio.gather(task, return_exceptions=True)
    relay._task_done(task)
    message = log.error.call_args.args[0]
    assert "boom" in message
    assert "Traceback" in message
    assert task not in relay._tasks


@pytest.mark.asyncio
async def test_non_ascii_domain_dropped():
    relay, transport = make_relay()
    data = b"\x00\x00\x00\x03\x0cexa\xffmple.com\x00\x35query"
    with patch.object(relay, "relay_datagram", new_callable=AsyncMock) as relay_datagram:
        relay.datagram_received(data, CLIENT)
        await asyncio.sleep(0)
    relay_datagram.assert_not_called()
    transport.sendto.assert_not_called()
