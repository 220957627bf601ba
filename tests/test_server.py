import asyncio
from types import SimpleNamespace

from key20 import crypto
from key20.protocol import NONCE_CHAR_UUID, UNLOCK_CHAR_UUID, split
from key20.server.server import Key20GattServer
from key20.server.state import LockState

SECRET = bytes(range(32))


def make_server(tmp_path, auth_timeout):
    return Key20GattServer(keys={1: SECRET}, key_file=tmp_path / "keys.json", auth_timeout=auth_timeout)


class TestAuthTimer:
    def test_stalled_client_is_aborted(self, tmp_path):
        server = make_server(tmp_path, auth_timeout=0.01)

        async def scenario():
            server._loop = asyncio.get_running_loop()
            server._handle_connect()
            assert server.handler.state == LockState.AUTH_WAIT_SUBSCRIPTION
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        assert server.handler.state == LockState.ABORTED_WAIT_DISCONNECT
        server._handle_disconnect()
        assert server.handler.state == LockState.IDLE

    def test_timer_stops_once_hmac_is_received(self, tmp_path):
        server = make_server(tmp_path, auth_timeout=0.05)
        unlocked = []
        server.handler.on_unlock = unlocked.append

        async def scenario():
            server._loop = asyncio.get_running_loop()
            server._handle_connect()
            server._handle_subscribe(SimpleNamespace(uuid=NONCE_CHAR_UUID))
            nonce = server.handler.session.nonce
            for chunk in split(crypto.hmac_sha512_256(SECRET, nonce), 1):
                server._handle_write(SimpleNamespace(uuid=UNLOCK_CHAR_UUID), bytearray(chunk))
            assert server._auth_timer is None
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        assert server.handler.state == LockState.AUTH_WAIT_DISCONNECT
        server._handle_disconnect()
        assert unlocked == [1]

    def test_disconnect_cancels_timer(self, tmp_path):
        server = make_server(tmp_path, auth_timeout=0.05)

        async def scenario():
            server._loop = asyncio.get_running_loop()
            server._handle_connect()
            server._handle_disconnect()
            assert server._auth_timer is None
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        assert server.handler.state == LockState.IDLE
