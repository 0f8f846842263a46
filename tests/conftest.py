import json
import socket

import pytest
import pytest_asyncio

from accrual_server import AccrualServer


class FakeWebSocket:
    """Records what would have gone over the wire."""

    def __init__(self):
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))

    send_str = send


@pytest.fixture
def fake_websocket():
    return FakeWebSocket()


@pytest.fixture
def unused_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest_asyncio.fixture
async def accrual_server():
    server = AccrualServer(heartbeat_interval=0.1, accrual_interval=0.25, heartbeat_timeout=60)
    await server.start(host="127.0.0.1", port=0)
    yield server
    await server.stop()


@pytest.fixture
def ws_url(accrual_server):
    return f"ws://127.0.0.1:{accrual_server.port}/ws"
