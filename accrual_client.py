#!/usr/bin/env python3
"""
WebSocket test client for the point accrual server.
Connects, answers heartbeats, requests the balance and logs every message
received during a three minute observation window.
"""

import asyncio
import datetime
import json
import time
import traceback

import websockets

SERVER_URL = "ws://localhost:3000/ws"

# Authentication has been removed for testing; connections need no token.

CONNECT_TIMEOUT = 2  # seconds
OBSERVATION_MINUTES = 3
MINUTE_SECONDS = 60


def log(message):
    """Print a timestamped log message."""
    timestamp = datetime.datetime.now().strftime('%H:%M:%S')
    print(f"[{timestamp}] {message}")


def payload_field(payload, key):
    """Read a key from a payload that may not be an object."""
    if isinstance(payload, dict):
        return payload.get(key)
    return None


class WebSocketTester:
    """Single connection to the accrual server plus the counters we report."""

    def __init__(self, uri=SERVER_URL, connect_timeout=CONNECT_TIMEOUT):
        self.uri = uri
        self.connect_timeout = connect_timeout
        self.websocket = None
        self.is_connected = False
        self.heartbeat_count = 0
        self.accrual_count = 0
        self._receiver = None

    async def connect(self):
        log("🔌 Connecting to WebSocket server...")
        try:
            self.websocket = await websockets.connect(
                self.uri, open_timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            log(f"❌ WebSocket error: {e!r}")
            return False

        self.is_connected = True
        log("✅ WebSocket connection established")
        self._receiver = asyncio.create_task(self.receive_messages())
        return True

    async def receive_messages(self):
        """Read frames until the socket closes."""
        try:
            async for data in self.websocket:
                await self.on_message(data)
        except websockets.exceptions.ConnectionClosedError as e:
            log(f"❌ WebSocket error: {e}")
        finally:
            self.is_connected = False
            code = self.websocket.close_code
            reason = self.websocket.close_reason or ''
            log(f"🔴 WebSocket connection closed: {code} - {reason}")

    async def on_message(self, data):
        try:
            message = json.loads(data)
        except ValueError as e:
            log(f"❌ Failed to parse message: {e}")
            return

        if not isinstance(message, dict):
            log(f"❌ Failed to parse message: expected an object, got {type(message).__name__}")
            return

        await self.handle_message(message)

    async def handle_message(self, message):
        log(f"📨 Received message: {json.dumps(message, indent=2)}")

        message_type = message.get('type')
        payload = message.get('payload')

        if message_type == 'connected':
            log("🎉 Successfully connected")
            log(f"User: {payload}")

        elif message_type == 'heartbeat':
            self.heartbeat_count += 1
            log(f"💓 Heartbeat #{self.heartbeat_count} received")
            await self.send_heartbeat()

        elif message_type == 'balance':
            log(f"💰 Current balance: {payload_field(payload, 'balance')} points")

        elif message_type == 'accrual':
            self.accrual_count += 1
            log(f"🎯 Accrual #{self.accrual_count}: {payload_field(payload, 'points')} points added")
            log(f"💳 New balance: {payload_field(payload, 'new_balance')} points")

        elif message_type == 'balance_update':
            log(f"💳 Balance updated: {payload_field(payload, 'balance')} points")

        elif message_type == 'error':
            log(f"🚨 Error from server: {payload}")

        else:
            log(f"❓ Unknown message type: {message_type}")

    async def send_heartbeat(self):
        heartbeat_message = {
            'type': 'heartbeat',
            'payload': {
                'timestamp': int(time.time() * 1000)
            }
        }
        return await self.send_message(heartbeat_message)

    async def request_balance(self):
        balance_message = {
            'type': 'balance_request',
            'payload': {}
        }
        log("📊 Requesting balance...")
        return await self.send_message(balance_message)

    async def send_message(self, message):
        if not (self.websocket and self.is_connected):
            log("❌ Cannot send message - WebSocket not connected")
            return False

        try:
            await self.websocket.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            log(f"❌ Failed to send {message.get('type')}: {e}")
            return False
        return True

    async def disconnect(self):
        if self.websocket is None:
            return

        log("👋 Disconnecting from WebSocket...")
        await self.websocket.close()
        if self._receiver is not None:
            await self._receiver


async def run_test(uri=SERVER_URL, minutes=OBSERVATION_MINUTES,
                   minute_seconds=MINUTE_SECONDS, connect_timeout=CONNECT_TIMEOUT):
    """Connect, request the balance and watch accruals for a few minutes."""
    log("🧪 Starting WebSocket Test")
    log("=" * 50)

    tester = WebSocketTester(uri, connect_timeout=connect_timeout)

    try:
        if not await tester.connect():
            log("❌ Failed to establish WebSocket connection")
            return tester

        log("")
        log("📊 Testing balance request...")
        await tester.request_balance()

        log("")
        log(f"⏰ Keeping connection alive for {minutes} minutes to test point accruals...")
        log("💡 The server should award points every minute")
        log("💓 Heartbeats will be sent automatically")

        for elapsed in range(1, minutes + 1):
            await asyncio.sleep(minute_seconds)
            log(f"⏱️  {elapsed} minute(s) elapsed...")

        log("")
        log("✅ Test completed")
        log("📊 Summary:")
        log(f"   - Heartbeats received: {tester.heartbeat_count}")
        log(f"   - Accruals received: {tester.accrual_count}")

    except asyncio.CancelledError:
        log("")
        log("🛑 Received shutdown signal")
        raise
    finally:
        await tester.disconnect()

    return tester


if __name__ == "__main__":
    try:
        asyncio.run(run_test())
    except KeyboardInterrupt:
        log("👋 Exiting")
    except Exception as e:
        log(f"❌ UNEXPECTED ERROR: {e}")
        log(f"   Traceback: {traceback.format_exc()}")
