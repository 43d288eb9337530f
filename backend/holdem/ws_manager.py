"""WebSocket connection registry with per-viewer state broadcast and heartbeat."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ClientRole(str, Enum):
    PLAYER = "player"
    SPECTATOR = "spectator"


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "player_id", "role", "last_pong")

    def __init__(self, ws: WebSocket, player_id: str, role: ClientRole) -> None:
        self.ws = ws
        self.player_id = player_id
        self.role = role
        self.last_pong = time.time()

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            logger.debug("Send failed for %s", self.player_id, exc_info=True)
            return False


class ConnectionManager:
    """Tracks seated players and spectators per table."""

    # Seconds between pings
    HEARTBEAT_INTERVAL = 10
    # A client that has not answered a ping for this long is dropped
    HEARTBEAT_TIMEOUT = 30

    def __init__(self) -> None:
        # table_code -> {player_id -> ClientConnection}
        self._players: dict[str, dict[str, ClientConnection]] = {}
        # table_code -> [ClientConnection]
        self._spectators: dict[str, list[ClientConnection]] = {}
        self._task: asyncio.Task | None = None

    async def connect(
        self,
        code: str,
        player_id: str,
        ws: WebSocket,
        role: ClientRole = ClientRole.PLAYER,
    ) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws, player_id, role)

        if role == ClientRole.PLAYER:
            seats = self._players.setdefault(code, {})
            old = seats.get(player_id)
            if old is not None:
                # Stale tab: the newest connection wins
                try:
                    await old.ws.close(code=4001, reason="Replaced by new connection")
                except Exception:
                    logger.debug("Closing replaced socket failed", exc_info=True)
            seats[player_id] = conn
        else:
            self._spectators.setdefault(code, []).append(conn)

        logger.info("WS connect: table=%s player=%s role=%s", code, player_id, role.value)
        return conn

    def disconnect(self, code: str, conn: ClientConnection) -> None:
        """Remove a connection unless a newer one has replaced it."""
        if conn.role == ClientRole.PLAYER:
            seats = self._players.get(code, {})
            if seats.get(conn.player_id) is conn:
                del seats[conn.player_id]
                if not seats:
                    self._players.pop(code, None)
                logger.info("WS disconnect: table=%s player=%s", code, conn.player_id)
        else:
            specs = self._spectators.get(code, [])
            if conn in specs:
                specs.remove(conn)
                if not specs:
                    self._spectators.pop(code, None)

    def connections(self, code: str) -> list[ClientConnection]:
        return list(self._players.get(code, {}).values()) + list(
            self._spectators.get(code, [])
        )

    def get_connected_player_ids(self, code: str) -> set[str]:
        return set(self._players.get(code, {}))

    def get_spectator_count(self, code: str) -> int:
        return len(self._spectators.get(code, []))

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def broadcast_views(
        self,
        code: str,
        build_view: Callable[[Optional[str]], dict[str, Any]],
    ) -> None:
        """Send every client the view ``build_view`` produces for it.

        Spectators get ``build_view(None)``.  The per-player call is what
        keeps other players' hole cards off the wire.
        """
        for conn in self.connections(code):
            viewer = conn.player_id if conn.role == ClientRole.PLAYER else None
            try:
                view = build_view(viewer)
            except Exception:
                logger.debug("Failed to build view for %s in %s", viewer, code, exc_info=True)
                continue
            msg = json.dumps({"type": "game_state", "data": view})
            if not await conn.send(msg):
                self.disconnect(code, conn)

    async def broadcast_to_all(self, code: str, message: str) -> None:
        """Send the same message to every client at a table."""
        for conn in self.connections(code):
            if not await conn.send(message):
                self.disconnect(code, conn)

    def get_connection_info(self, code: str) -> dict:
        return {
            "type": "connection_info",
            "connected_players": sorted(self.get_connected_player_ids(code)),
            "spectator_count": self.get_spectator_count(code),
        }

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._heartbeat_loop())
            logger.info("Heartbeat started")

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Heartbeat stopped")

    def record_pong(self, conn: ClientConnection) -> None:
        """Record that a client answered a ping."""
        conn.last_pong = time.time()

    def is_stale(self, conn: ClientConnection, now: float) -> bool:
        return (now - conn.last_pong) > self.HEARTBEAT_TIMEOUT

    async def send_ping(self, code: str) -> None:
        """Send a ping message to every client at a table."""
        await self.broadcast_to_all(code, json.dumps({"type": "ping", "ts": time.time()}))

    async def sweep(self, now: float) -> list[ClientConnection]:
        """Drop clients that stopped answering pings, then ping the rest."""
        dropped: list[ClientConnection] = []
        for code in set(self._players) | set(self._spectators):
            for conn in self.connections(code):
                if not self.is_stale(conn, now):
                    continue
                self.disconnect(code, conn)
                dropped.append(conn)
                try:
                    await conn.ws.close(code=4002, reason="Heartbeat timeout")
                except Exception:
                    logger.debug("Closing stale socket failed", exc_info=True)
            if self.connections(code):
                await self.send_ping(code)
        if dropped:
            logger.info("Heartbeat dropped %d stale connection(s)", len(dropped))
        return dropped

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.HEARTBEAT_INTERVAL)
                try:
                    await self.sweep(time.time())
                except Exception:
                    logger.exception("Heartbeat sweep failed")
        except asyncio.CancelledError:
            pass


manager = ConnectionManager()
