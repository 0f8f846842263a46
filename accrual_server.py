#!/usr/bin/env python3
"""
Local stub of the point accrual server.

Speaks the same WebSocket protocol as the production server so the test
client can be run without MongoDB: every connection is the fixed test user,
wallets live in memory, heartbeats go out every 30 seconds and one point is
accrued per minute to every active session. The health check and the admin
endpoints are served from the same aiohttp app and port as the WebSocket.
"""

import asyncio
import contextlib
import datetime
import json
import time
import traceback

from aiohttp import WSCloseCode, WSMsgType, web

HOST = "0.0.0.0"
PORT = 3000
WS_PATH = "/ws"
VERSION = "1.0.0"

HEARTBEAT_INTERVAL = 30  # seconds
HEARTBEAT_TIMEOUT = 90  # seconds without a heartbeat before a session goes stale
ACCRUAL_INTERVAL = 60  # seconds
POINTS_PER_MINUTE = 1

# Authentication is removed, so everyone is the same mock user
TEST_USER_ID = "507f1f77bcf86cd799439011"
TEST_USERNAME = "testuser@example.com"


def log(message):
    """Print a timestamped log message."""
    timestamp = datetime.datetime.now().strftime('%H:%M:%S')
    print(f"[{timestamp}] {message}")


def isoformat(ts):
    return datetime.datetime.fromtimestamp(ts).astimezone().isoformat()


class Session:
    def __init__(self, user_id, username, websocket):
        now = time.time()
        self.user_id = user_id
        self.username = username
        self.websocket = websocket
        self.connected_at = now
        self.last_accrual_at = now
        self.last_heartbeat = now
        self.is_active = True
        self.heartbeat_task = None

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'username': self.username,
            'connected_at': isoformat(self.connected_at),
            'last_accrual': isoformat(self.last_accrual_at),
            'last_heartbeat': isoformat(self.last_heartbeat),
            'is_active': self.is_active,
        }


class SessionManager:
    """One session per user; a new connection takes over the slot."""

    def __init__(self):
        self.sessions = {}

    def add_session(self, user_id, username, websocket):
        session = Session(user_id, username, websocket)
        self.sessions[user_id] = session
        log(f"✅ Session created for user: {username} ({user_id})")
        return session

    def get_session(self, user_id):
        return self.sessions.get(user_id)

    def remove_session(self, user_id, websocket=None):
        """Drop the user's session, unless another connection has since replaced it."""
        session = self.sessions.get(user_id)
        if session is None:
            return False
        if websocket is not None and session.websocket is not websocket:
            return False

        session.is_active = False
        del self.sessions[user_id]
        log(f"🗑️  Session removed for user: {session.username} ({user_id})")
        return True

    def update_heartbeat(self, user_id):
        session = self.sessions.get(user_id)
        if session:
            session.last_heartbeat = time.time()
            session.is_active = True

    def update_last_accrual(self, user_id):
        session = self.sessions.get(user_id)
        if session:
            session.last_accrual_at = time.time()

    def all_sessions(self):
        return list(self.sessions.values())

    def active_sessions(self):
        return [s for s in self.sessions.values() if s.is_active]

    def check_inactive_sessions(self, timeout, now=None):
        """Mark sessions with no recent heartbeat inactive and return their user ids."""
        if now is None:
            now = time.time()

        inactive = []
        for user_id, session in self.sessions.items():
            if session.is_active and now - session.last_heartbeat > timeout:
                session.is_active = False
                inactive.append(user_id)
                log(f"⚠️  Session marked inactive due to heartbeat timeout: {session.username} ({user_id})")
        return inactive


async def send_json(websocket, message_type, payload):
    await websocket.send_str(json.dumps({'type': message_type, 'payload': payload}))


class AccrualServer:
    def __init__(self, heartbeat_interval=HEARTBEAT_INTERVAL, accrual_interval=ACCRUAL_INTERVAL,
                 points_per_minute=POINTS_PER_MINUTE, heartbeat_timeout=HEARTBEAT_TIMEOUT):
        self.heartbeat_interval = heartbeat_interval
        self.accrual_interval = accrual_interval
        self.points_per_minute = points_per_minute
        self.heartbeat_timeout = heartbeat_timeout

        self.sessions = SessionManager()
        self.wallets = {}

        self.runner = None
        self.accrual_task = None

    # Wallets

    def get_balance(self, user_id):
        return self.wallets.get(user_id)

    def ensure_wallet(self, user_id):
        if user_id not in self.wallets:
            self.wallets[user_id] = 0
            log(f"👛 Wallet created for user {user_id}")
        return self.wallets[user_id]

    def accrue_points(self, user_id, points):
        before = self.ensure_wallet(user_id)
        self.wallets[user_id] = before + points
        return self.wallets[user_id]

    # WebSocket side

    async def handle_client(self, request):
        """Handle a client connection."""
        websocket = web.WebSocketResponse()
        await websocket.prepare(request)
        client_addr = request.remote

        user_id, username = TEST_USER_ID, TEST_USERNAME

        previous = self.sessions.get_session(user_id)
        session = self.sessions.add_session(user_id, username, websocket)
        if previous:
            log(f"⚠️  Replacing existing session for {username} with connection from {client_addr}")
            await previous.websocket.close()

        self.ensure_wallet(user_id)
        log(f"🔌 CLIENT CONNECTED: {client_addr} as test user {username}")

        try:
            session.heartbeat_task = asyncio.create_task(self.send_heartbeats(session))
            await send_json(websocket, 'connected', {'user_id': user_id, 'username': username})

            async for msg in websocket:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_message(session, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log(f"❌ WebSocket read error for user {username}: {websocket.exception()}")

            log(f"🔌 CLIENT DISCONNECTED: {client_addr} ({websocket.close_code})")

        except ConnectionResetError as e:
            log(f"🔌 CLIENT DISCONNECTED: {client_addr}")
            log(f"   Reason: {e}")
        except Exception as e:
            log(f"❌ ERROR with {client_addr}: {e}")
            log(f"   Traceback: {traceback.format_exc()}")
        finally:
            if session.heartbeat_task:
                session.heartbeat_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await session.heartbeat_task
            self.sessions.remove_session(user_id, websocket)

        return websocket

    async def send_heartbeats(self, session):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await send_json(session.websocket, 'heartbeat', {'timestamp': int(time.time())})
            except ConnectionResetError as e:
                log(f"❌ Failed to send heartbeat to user {session.username}: {e}")
                return

    async def handle_message(self, session, data):
        try:
            message = json.loads(data)
            message_type = message['type']
        except (ValueError, TypeError, KeyError) as e:
            log(f"❌ Failed to parse WebSocket message from user {session.username}: {e!r}")
            return

        if message_type == 'heartbeat':
            self.sessions.update_heartbeat(session.user_id)
            log(f"💓 Heartbeat received from user: {session.username}")

        elif message_type == 'balance_request':
            await self.handle_balance_request(session)

        else:
            log(f"⚠️  Unknown message type from user {session.username}: {message_type}")

    async def handle_balance_request(self, session):
        balance = self.get_balance(session.user_id)
        if balance is None:
            log(f"❌ No wallet for user {session.username}")
            await send_json(session.websocket, 'error', "Failed to retrieve balance")
            return

        await send_json(session.websocket, 'balance', {'balance': balance})
        log(f"💰 Balance sent to user: {session.username} - {balance} points")

    # Accrual job

    async def run_accrual(self):
        """Award points to every active session and notify them. Returns the success count."""
        start_time = time.monotonic()
        log(f"⏰ Starting accrual process at {datetime.datetime.now():%Y-%m-%d %H:%M:%S}")

        self.sessions.check_inactive_sessions(self.heartbeat_timeout)
        active = self.sessions.active_sessions()
        log(f"📊 Found {len(active)} active sessions")

        if not active:
            log("ℹ️  No active sessions found, skipping accrual")
            return 0

        success_count = 0
        failure_count = 0

        for session in active:
            points = self.points_per_minute
            new_balance = self.accrue_points(session.user_id, points)
            self.sessions.update_last_accrual(session.user_id)

            try:
                await send_json(session.websocket, 'accrual', {
                    'points': points,
                    'new_balance': new_balance,
                    'timestamp': int(time.time()),
                })
            except ConnectionResetError as e:
                log(f"❌ Failed to send accrual notification to user {session.username}: {e}")
                failure_count += 1
                continue

            log(f"💰 Accrued {points} points for user {session.username}, new balance: {new_balance}")
            success_count += 1

        elapsed = time.monotonic() - start_time
        log(f"✅ Accrual process completed in {elapsed*1000:.1f}ms - Success: {success_count}, Failures: {failure_count}")
        return success_count

    async def accrual_loop(self):
        log(f"✅ Accrual job started - running every {self.accrual_interval}s")
        while True:
            await asyncio.sleep(self.accrual_interval)
            await self.run_accrual()

    # Admin HTTP side

    async def health(self, request):
        return web.json_response({
            'status': 'healthy',
            'timestamp': datetime.datetime.now().astimezone().isoformat(),
            'version': VERSION,
        })

    async def list_sessions(self, request):
        active = self.sessions.active_sessions()
        return web.json_response({
            'total_sessions': len(active),
            'sessions': [s.to_dict() for s in active],
        })

    async def trigger_accrual(self, request):
        log("🔧 Running manual accrual job")
        awarded = await self.run_accrual()
        return web.json_response({
            'message': 'Manual accrual job triggered',
            'status': 'success',
            'sessions_awarded': awarded,
        })

    def create_app(self):
        app = web.Application()
        app.router.add_get('/health', self.health)
        app.router.add_get(WS_PATH, self.handle_client)
        app.router.add_post('/admin/accrual/run', self.trigger_accrual)
        app.router.add_get('/admin/sessions', self.list_sessions)
        return app

    # Lifecycle

    async def start(self, host=HOST, port=PORT):
        self.runner = web.AppRunner(self.create_app())
        await self.runner.setup()
        await web.TCPSite(self.runner, host, port).start()

        self.accrual_task = asyncio.create_task(self.accrual_loop())

    @property
    def port(self):
        """Port actually bound, useful when started on port 0."""
        return self.runner.addresses[0][1]

    async def close_sessions(self):
        for session in self.sessions.all_sessions():
            await session.websocket.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def stop(self):
        if self.accrual_task:
            self.accrual_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.accrual_task
            self.accrual_task = None
            log("🛑 Accrual job stopped")

        if self.runner:
            await self.close_sessions()
            await self.runner.cleanup()
            self.runner = None


async def main():
    """Start the WebSocket server, admin endpoints and accrual job."""
    log("=" * 60)
    log("🚀 STARTING POINT ACCRUAL STUB SERVER")
    log("=" * 60)
    log(f"WebSocket URL: ws://localhost:{PORT}{WS_PATH}")
    log(f"Health URL:    http://localhost:{PORT}/health")
    log(f"Heartbeat every {HEARTBEAT_INTERVAL}s, {POINTS_PER_MINUTE} point(s) every {ACCRUAL_INTERVAL}s")
    log("⚠️  Authentication disabled - all clients are the test user")
    log("=" * 60)

    server = AccrualServer()
    try:
        await server.start()
        log("⏳ Waiting for connections...")
        await asyncio.Future()  # Run forever
    except OSError as e:
        log(f"❌ FATAL ERROR: Server failed to start: {e}")
        log(f"   Traceback: {traceback.format_exc()}")
    finally:
        await server.stop()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log("")
        log("🛑 SERVER STOPPED by user (Ctrl+C)")
    except Exception as e:
        log(f"❌ UNEXPECTED ERROR: {e}")
        log(f"   Traceback: {traceback.format_exc()}")
