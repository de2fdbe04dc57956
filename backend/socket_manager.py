from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List, Optional, Set
import json
import hmac
import time
import asyncio
import logging

import config
from game_state import Effect, GameSession, Registration

logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGES = {
    Registration.DENIED_STARTED: "The game has already started",
    Registration.DENIED_ELIMINATED: "You have been eliminated from this game",
}


class GameRoom:
    """Connections, timers and the single lock around one GameSession."""

    def __init__(self, session: Optional[GameSession] = None):
        self.session = session or GameSession()
        self.connections: Dict[str, WebSocket] = {}
        self.moderators: Set[str] = set()
        self.identities: Dict[str, str] = {}  # client_id -> player name
        self.timer_task: Optional[asyncio.Task] = None
        self.intro_task: Optional[asyncio.Task] = None
        self.lock = asyncio.Lock()
        # WS rate limiting: client_id -> list of timestamps
        self.msg_timestamps: Dict[str, list] = {}
        self.cleanups: Set[asyncio.Task] = set()  # in-flight disconnect handling

    def client_for(self, name: str) -> Optional[str]:
        for client_id, bound in self.identities.items():
            if bound == name:
                return client_id
        return None

    def _remove_connection(self, client_id: str) -> Optional[str]:
        """Drop a connection; returns the player name it was bound to, if any."""
        self.connections.pop(client_id, None)
        self.moderators.discard(client_id)
        self.msg_timestamps.pop(client_id, None)
        return self.identities.pop(client_id, None)

    async def send_to(self, client_id: str, message: dict):
        ws = self.connections.get(client_id)
        if not ws:
            return
        try:
            await ws.send_json(message)
        except Exception:
            await self._drop([client_id])

    async def broadcast(self, message: dict):
        disconnected = []
        for client_id, ws in list(self.connections.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        if disconnected:
            await self._drop(disconnected)

    async def send_state(self, client_id: str):
        """Replay the full current state to a single connection."""
        messages = self.session.state_messages(reveal_answer=client_id in self.moderators)
        for message in messages:
            await self.send_to(client_id, message)

    async def broadcast_state(self):
        public = self.session.state_messages()
        private = self.session.state_messages(reveal_answer=True)
        disconnected = []
        for client_id, ws in list(self.connections.items()):
            messages = private if client_id in self.moderators else public
            try:
                for message in messages:
                    await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        if disconnected:
            await self._drop(disconnected)

    def _detach(self, client_id: str):
        name = self._remove_connection(client_id)
        if name:
            self.session.detach(name)

    async def _drop(self, client_ids: List[str]):
        """Detach connections whose send failed and tell everyone else.

        Must be called with `lock` held. Each round removes the failed
        connections, so nested failures terminate.
        """
        for client_id in client_ids:
            logger.info("Send to %s failed, dropping connection", client_id)
            self._detach(client_id)
        await self.flush()
        await self.broadcast_state()

    async def release(self, client_id: str):
        """Connection closed: detach its player and broadcast the result."""
        async with self.lock:
            self._detach(client_id)
            await self.flush()
            await self.broadcast_state()

    # ------------------------------------------------------------------
    # Scheduled tasks
    # ------------------------------------------------------------------

    def _cancel(self, task: Optional[asyncio.Task]):
        # A task finishing its own transition must not cancel itself mid-broadcast
        if task and task is not asyncio.current_task():
            task.cancel()

    def cancel_tasks(self):
        self._cancel(self.timer_task)
        self._cancel(self.intro_task)
        self.timer_task = None
        self.intro_task = None

    def apply_effects(self, effects: List[Effect]):
        for effect in effects:
            if effect == Effect.START_COUNTDOWN:
                self._cancel(self.timer_task)
                self.timer_task = asyncio.create_task(self.countdown())
            elif effect == Effect.STOP_COUNTDOWN:
                self._cancel(self.timer_task)
                self.timer_task = None
            elif effect == Effect.SCHEDULE_INTRO:
                self._cancel(self.intro_task)
                self.intro_task = asyncio.create_task(self.final_intro(config.FINAL_INTRO_DELAY))
            elif effect == Effect.CANCEL_INTRO:
                self._cancel(self.intro_task)
                self.intro_task = None

    async def flush(self):
        """Apply queued timer effects and deliver queued one-shot events.

        Must be called with `lock` held, right after a session command.
        """
        events, effects = self.session.drain()
        self.apply_effects(effects)
        for event in events:
            await self.broadcast(event)

    async def countdown(self):
        """Ticks the round timer once a second until it stops."""
        try:
            while True:
                await asyncio.sleep(1)
                async with self.lock:
                    running = self.session.tick()
                    await self.broadcast({"type": "TIMER", "remaining": self.session.timer})
                    if not running:
                        await self.flush()
                        await self.broadcast_state()
                        return
        except asyncio.CancelledError:
            pass

    async def final_intro(self, delay: float):
        try:
            await asyncio.sleep(delay)
            async with self.lock:
                if self.session.finish_intro():
                    await self.flush()
                    await self.broadcast_state()
        except asyncio.CancelledError:
            pass


class SocketManager:
    def __init__(self, room: Optional[GameRoom] = None):
        self.room = room or GameRoom()
        self.allowed_origins: List[str] = []
        self.moderator_token: str = config.MODERATOR_TOKEN

    async def connect(self, websocket: WebSocket, client_id: str,
                      is_moderator: bool = False, token: str = ""):
        # Validate WebSocket origin
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        room = self.room

        # Verify moderator token
        if is_moderator and self.moderator_token:
            if not token or not hmac.compare_digest(token, self.moderator_token):
                await websocket.send_json({"type": "ERROR", "message": "Invalid moderator token"})
                await websocket.close()
                return

        async with room.lock:
            # A stale socket reusing this client id is replaced
            if client_id in room.connections:
                room._detach(client_id)
                await room.flush()

            room.connections[client_id] = websocket
            if is_moderator:
                room.moderators.add(client_id)
                logger.info("Moderator connected (%s)", client_id)
            await room.send_to(client_id, {"type": "CONNECTED", "moderator": is_moderator})
            await room.send_state(client_id)

        try:
            while True:
                data = await websocket.receive_text()

                # Enforce message size limit
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "ERROR", "message": "Message too large"})
                    continue

                # Per-client rate limiting
                now = time.time()
                timestamps = room.msg_timestamps.setdefault(client_id, [])
                timestamps[:] = [t for t in timestamps if now - t < 1.0]
                if len(timestamps) >= config.WS_RATE_LIMIT_PER_SEC:
                    await websocket.send_json({"type": "ERROR", "message": "Too many messages"})
                    continue
                timestamps.append(now)

                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "ERROR", "message": "Invalid message format"})
                    continue
                if not isinstance(message, dict):
                    await websocket.send_json({"type": "ERROR", "message": "Invalid message format"})
                    continue

                await self.handle_message(client_id, message, client_id in room.moderators)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected", client_id)
        except Exception:
            logger.exception("WebSocket error for client %s", client_id)
        finally:
            # A kicked or replaced socket no longer owns this client id
            if room.connections.get(client_id) is websocket:
                # Shielded so the broadcast completes even if this handler is cancelled
                cleanup = asyncio.ensure_future(room.release(client_id))
                room.cleanups.add(cleanup)
                cleanup.add_done_callback(room.cleanups.discard)
                await asyncio.shield(cleanup)

    async def handle_message(self, client_id: str, message: dict, is_moderator: bool):
        msg_type = message.get("type")
        room = self.room

        async with room.lock:
            if msg_type == "REQUEST_STATE":
                await room.send_state(client_id)
                return

            if msg_type in ("REGISTER", "REJOIN"):
                await self._register(client_id, message.get("name"), allow_new=msg_type == "REGISTER")
                return

            if is_moderator:
                changed = self._moderator_command(msg_type, message)
            else:
                changed = self._player_command(client_id, msg_type, message)

            if changed is None:
                logger.debug("Ignoring message %r from %s", msg_type, client_id)
                return
            await room.flush()
            if changed:
                await room.broadcast_state()

    def _moderator_command(self, msg_type, message: dict) -> Optional[bool]:
        session = self.room.session
        if msg_type == "SET_PHASE":
            return session.set_phase(message.get("phase"))
        if msg_type == "CORRECT_ANSWER":
            return session.judge_answer(True)
        if msg_type == "WRONG_ANSWER":
            return session.judge_answer(False)
        if msg_type == "BANK":
            return session.manual_bank()
        if msg_type == "ELIMINATE":
            return session.eliminate(message.get("name"))
        if msg_type == "RESET":
            session.reset()
            self.room.identities.clear()
            return True
        return None

    def _player_command(self, client_id: str, msg_type, message: dict) -> Optional[bool]:
        session = self.room.session
        name = self.room.identities.get(client_id)
        if msg_type not in ("VOTE", "BANK"):
            return None
        if not name:
            return False
        if msg_type == "VOTE":
            return session.cast_vote(name, message.get("target"))
        return session.manual_bank(requested_by=name)

    async def _register(self, client_id: str, raw_name, allow_new: bool):
        room = self.room
        session = room.session
        outcome, name = session.register(raw_name, allow_new=allow_new)

        if outcome in (Registration.JOINED, Registration.REJOINED):
            previous = room.identities.get(client_id)
            if previous and previous != name:
                room.identities.pop(client_id)
                session.detach(previous)
            await self._take_over(client_id, name)
            room.identities[client_id] = name

        if outcome == Registration.JOINED:
            await room.send_to(client_id, {"type": "REGISTERED", "name": name})
            await room.flush()
            await room.broadcast_state()
            return
        if outcome == Registration.REJOINED:
            # Only the rejoining connection gets the replay
            await room.send_to(client_id, {"type": "REJOIN_SUCCESS", "name": name, "state": session.snapshot()})
            await room.flush()
            await room.send_state(client_id)
            return

        if outcome == Registration.UNKNOWN:
            await room.send_to(client_id, {"type": "REJOIN_FAILED", "name": name})
        elif outcome == Registration.INVALID_NAME:
            await room.send_to(client_id, {
                "type": "ERROR",
                "message": f"Name must be 1-{config.MAX_NICKNAME_LENGTH} characters",
            })
        else:
            await room.send_to(client_id, {"type": "ACCESS_DENIED", "message": ACCESS_DENIED_MESSAGES[outcome]})

    async def _take_over(self, client_id: str, name: str):
        """Rebind an identity to a new connection, kicking the old device."""
        room = self.room
        old_id = room.client_for(name)
        if not old_id or old_id == client_id:
            return
        room.identities.pop(old_id, None)
        old_ws = room.connections.pop(old_id, None)
        room.moderators.discard(old_id)
        room.msg_timestamps.pop(old_id, None)
        if old_ws:
            try:
                await old_ws.send_json({"type": "KICKED", "message": "You joined from another device"})
                await old_ws.close()
            except Exception:
                pass
        logger.info("Player '%s' moved to a new connection", name)

    def reset_room(self):
        """Fresh room with the default catalog."""
        self.room.cancel_tasks()
        self.room = GameRoom()


socket_manager = SocketManager()
