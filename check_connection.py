#!/usr/bin/env python3
"""Quick probe: is the accrual server up, and does the WebSocket handshake work?"""

import asyncio
import datetime

import aiohttp
import websockets

HEALTH_URL = "http://localhost:3000/health"
WS_URL = "ws://localhost:3000/ws"
TIMEOUT = 5  # seconds


def log(message):
    timestamp = datetime.datetime.now().strftime('%H:%M:%S')
    print(f"[{timestamp}] {message}")


async def check_health(url=HEALTH_URL):
    log(f"🩺 Checking {url}...")
    try:
        timeout = aiohttp.ClientTimeout(total=TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                data = await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log(f"❌ Health check failed: {e!r}")
        return None

    log(f"✅ Server is {data.get('status')} (version {data.get('version')})")
    return data


async def check_websocket(uri=WS_URL):
    log(f"🔗 Testing connection to {uri}...")
    try:
        async with websockets.connect(uri, open_timeout=TIMEOUT) as ws:
            log("✅ Connected successfully!")
            msg = await asyncio.wait_for(ws.recv(), TIMEOUT)
            log(f"📥 Received: '{msg}'")
            return msg
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        log(f"❌ Failed: {e!r}")
        return None


async def main(health_url=HEALTH_URL, ws_url=WS_URL):
    health = await check_health(health_url)
    welcome = await check_websocket(ws_url)
    return health is not None and welcome is not None


def run():
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        log("🛑 Interrupted")
        return False


if __name__ == "__main__":
    run()
