"""
Async WebSocket integration tests using a real uvicorn server.

Covers what the sync TestClient can't exercise well:
- Round countdown ticking and expiring into times_up
- Finale intro delay entering the shootout on its own
- State broadcasts reaching every socket in real time

Requires: pytest-asyncio, httpx, websockets
"""
import sys
import os
import json
import asyncio

import pytest
import pytest_asyncio
import httpx
import websockets

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import uvicorn
from main import app
from socket_manager import socket_manager
import config


# ---------------------------------------------------------------------------
# Fixtures & helpers
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def server_port(monkeypatch):
    """Start a real uvicorn server on a random port, yield the port, shut down."""
    monkeypatch.setattr(config, "ROUND_TIME_BASE", 3)
    monkeypatch.setattr(config, "ROUND_TIME_MIN", 2)
    monkeypatch.setattr(config, "FINAL_INTRO_DELAY", 0.2)
    saved_origins = socket_manager.allowed_origins
    saved_token = socket_manager.moderator_token
    socket_manager.allowed_origins = []
    socket_manager.moderator_token = ""

    server_config = uvicorn.Config(app, host="127.0.0.1", port=0, log_level="warning")
    server = uvicorn.Server(server_config)
    serve_task = asyncio.create_task(server.serve())

    # Wait for server to start
    while not server.started:
        await asyncio.sleep(0.01)

    # Extract the OS-assigned port
    port = server.servers[0].sockets[0].getsockname()[1]
    yield port

    # Teardown
    server.should_exit = True
    await serve_task
    socket_manager.allowed_origins = saved_origins
    socket_manager.moderator_token = saved_token


async def send_json(ws, msg):
    """Send a JSON message over a websockets connection."""
    await ws.send(json.dumps(msg))


async def recv_until(ws, msg_type, timeout=15.0, max_messages=300, **fields):
    """Drain messages until we get the expected type (and field values), with timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    for _ in range(max_messages):
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TimeoutError(f"Never received {msg_type} within {timeout}s")
        msg = json.loads(await asyncio.wait_for(ws.recv(), timeout=remaining))
        if msg.get("type") == msg_type and all(msg.get(k) == v for k, v in fields.items()):
            return msg
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


async def collect_until(ws, msg_type, timeout=15.0, max_messages=300, **fields):
    """Collect all messages until the target one. Returns (collected, target_msg)."""
    collected = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    for _ in range(max_messages):
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise TimeoutError(f"Never received {msg_type} within {timeout}s")
        msg = json.loads(await asyncio.wait_for(ws.recv(), timeout=remaining))
        if msg.get("type") == msg_type and all(msg.get(k) == v for k, v in fields.items()):
            return collected, msg
        collected.append(msg)
    raise TimeoutError(f"Never received {msg_type} after {max_messages} messages")


def ws_url(port, client_id, **params):
    """Build a WebSocket URL with query params."""
    base = f"ws://127.0.0.1:{port}/ws/{client_id}"
    if params:
        qs = "&".join(f"{k}={v}" for k, v in params.items())
        base += f"?{qs}"
    return base


async def join(port, client_id, name):
    ws = await websockets.connect(ws_url(port, client_id))
    await send_json(ws, {"type": "REGISTER", "name": name})
    await recv_until(ws, "REGISTERED")
    return ws


# ---------------------------------------------------------------------------
# Timer Expiry Tests
# ---------------------------------------------------------------------------

class TestCountdown:
    @pytest.mark.asyncio
    async def test_countdown_expires_into_times_up(self, server_port):
        async with websockets.connect(ws_url(server_port, "mod-1", moderator="true")) as mod:
            await recv_until(mod, "CONNECTED")
            player = await join(server_port, "p-1", "Alice")
            try:
                await send_json(mod, {"type": "SET_PHASE", "phase": "questions"})
                await recv_until(mod, "PHASE_CHANGED", phase="questions")

                collected, _ = await collect_until(player, "PHASE_CHANGED", timeout=10, phase="times_up")
                ticks = [m["remaining"] for m in collected if m["type"] == "TIMER"]
                # Full-state TIMER from the phase entry, then one per second
                assert ticks[0] == config.round_duration(1)
                assert ticks[-1] == 0
                assert ticks == sorted(ticks, reverse=True)
            finally:
                await player.close()

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server_port}") as http:
            state = (await http.get("/game/state")).json()
            assert state["phase"] == "times_up"
            assert state["timer"] == 0

    @pytest.mark.asyncio
    async def test_leaving_questions_stops_countdown(self, server_port):
        async with websockets.connect(ws_url(server_port, "mod-1", moderator="true")) as mod:
            await recv_until(mod, "CONNECTED")
            player = await join(server_port, "p-1", "Alice")
            try:
                await send_json(mod, {"type": "SET_PHASE", "phase": "questions"})
                await recv_until(mod, "PHASE_CHANGED", phase="questions")
                await send_json(mod, {"type": "SET_PHASE", "phase": "voting"})
                await recv_until(mod, "PHASE_CHANGED", phase="voting")
                await asyncio.sleep(config.round_duration(1) + 0.5)
            finally:
                await player.close()

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server_port}") as http:
            state = (await http.get("/game/state")).json()
            assert state["phase"] == "voting"

    @pytest.mark.asyncio
    async def test_next_round_countdown_is_shorter(self, server_port, monkeypatch):
        monkeypatch.setattr(config, "ROUND_TIME_STEP", 1)
        async with websockets.connect(ws_url(server_port, "mod-1", moderator="true")) as mod:
            await recv_until(mod, "CONNECTED")
            players = [await join(server_port, f"p-{i}", name) for i, name in enumerate(["Ana", "Bob", "Cy"])]
            try:
                await send_json(mod, {"type": "ELIMINATE", "name": "Cy"})
                await recv_until(mod, "ROUND_UPDATE", round=2)
                await send_json(mod, {"type": "SET_PHASE", "phase": "questions"})
                await recv_until(mod, "PHASE_CHANGED", phase="questions")
                timer = await recv_until(mod, "TIMER")
                assert timer["remaining"] == config.round_duration(2) == 2
            finally:
                for ws in players:
                    await ws.close()


# ---------------------------------------------------------------------------
# Finale intro
# ---------------------------------------------------------------------------

class TestFinaleIntro:
    @pytest.mark.asyncio
    async def test_intro_enters_penalty_for_everyone(self, server_port):
        async with websockets.connect(ws_url(server_port, "mod-1", moderator="true")) as mod:
            await recv_until(mod, "CONNECTED")
            ana = await join(server_port, "p-a", "Ana")
            bob = await join(server_port, "p-b", "Bob")
            try:
                await send_json(mod, {"type": "SET_PHASE", "phase": "penalty"})
                intro = await recv_until(bob, "FINAL_STATE")
                assert intro["final"]["p1"]["name"] == "ANA"
                assert intro["final"]["shooter"] == "ANA"

                await recv_until(ana, "PHASE_CHANGED", phase="penalty", timeout=5)
                await recv_until(bob, "PHASE_CHANGED", phase="penalty", timeout=5)
                question = await recv_until(bob, "QUESTION_UPDATE")
                assert "answer" not in question["question"]
                question = await recv_until(mod, "QUESTION_UPDATE", timeout=5)
                assert "answer" in question["question"]
            finally:
                await ana.close()
                await bob.close()

    @pytest.mark.asyncio
    async def test_reset_during_intro_stays_in_lobby(self, server_port):
        async with websockets.connect(ws_url(server_port, "mod-1", moderator="true")) as mod:
            await recv_until(mod, "CONNECTED")
            ana = await join(server_port, "p-a", "Ana")
            bob = await join(server_port, "p-b", "Bob")
            try:
                await send_json(mod, {"type": "SET_PHASE", "phase": "penalty"})
                await recv_until(mod, "PHASE_CHANGED", phase="final_intro")
                await send_json(mod, {"type": "RESET"})
                await recv_until(ana, "GAME_RESET")
                await asyncio.sleep(config.FINAL_INTRO_DELAY + 0.3)
            finally:
                await ana.close()
                await bob.close()

        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{server_port}") as http:
            state = (await http.get("/game/state")).json()
            assert state["phase"] == "waiting"
            assert state["final"] is None
