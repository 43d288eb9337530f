"""FastAPI application — REST + WebSocket endpoints for hold'em tables."""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from holdem import redis_client, table_manager
from holdem.models import (
    ActionRequest,
    CreateTableRequest,
    CreateTableResponse,
    ErrorResponse,
    PIN_PATTERN,
    StartHandRequest,
)
from holdem.state import GameState
from holdem.timer import action_timer
from holdem.views import player_view
from holdem.ws_manager import ClientRole, manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    action_timer.set_manager(manager)
    action_timer.start()
    manager.start()
    yield
    manager.stop()
    action_timer.stop()
    await redis_client.close()


app = FastAPI(title="Hold'em Table API", lifespan=lifespan)

# ---------- Rate Limiting ----------

_rate_limit_enabled = os.getenv("RATE_LIMIT_ENABLED", "1") != "0"

limiter = Limiter(
    key_func=get_remote_address,
    enabled=_rate_limit_enabled,
)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please slow down."},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- REST endpoints ----------


@app.post("/api/tables", response_model=CreateTableResponse)
@limiter.limit("5/minute")
async def create_table(request: Request, req: CreateTableRequest):
    try:
        code, summary = await table_manager.create_table(req)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return CreateTableResponse(code=code, table=summary)


@app.get("/api/tables/{code}", responses={404: {"model": ErrorResponse}})
@limiter.limit("30/minute")
async def get_table(request: Request, code: str):
    summary = await table_manager.get_table_summary(code.upper())
    if summary is None:
        raise HTTPException(status_code=404, detail="Table not found")
    return summary


@app.post("/api/tables/{code}/hands")
@limiter.limit("30/minute")
async def start_hand(request: Request, code: str, req: StartHandRequest):
    """Deal the next hand.  Any seated player may deal; rejected while a hand is live."""
    code = code.upper()
    try:
        await table_manager.verify_player(code, req.player_id, req.pin)
        state = await table_manager.start_hand(code, seed=req.seed)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _broadcast_state(code, state)
    await _sync_timer(code)
    return {"ok": True, "hand_number": state.hand_number}


@app.post("/api/tables/{code}/action")
@limiter.limit("60/minute")
async def game_action(request: Request, code: str, req: ActionRequest):
    """Apply fold, check, call, bet or raise for one player.

    The response is the acting player's own view; a rejected action shows
    up as the last entry of ``messages`` and nothing is broadcast.
    """
    code = code.upper()
    try:
        await table_manager.verify_player(code, req.player_id, req.pin)
        state, accepted = await table_manager.apply_action(code, req.player_id, req.action)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if accepted:
        await _broadcast_state(code, state)
        await _sync_timer(code)
    return player_view(state, req.player_id)


@app.get("/api/tables/{code}/state/{player_id}")
@limiter.limit("30/minute")
async def get_player_state(
    request: Request, code: str, player_id: str, pin: str = Query(..., pattern=PIN_PATTERN)
):
    """Get the hand state as one player is allowed to see it."""
    code = code.upper()
    try:
        await table_manager.verify_player(code, player_id, pin)
        return await table_manager.get_player_view(code, player_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------- WebSocket ----------


@app.websocket("/ws/{code}/{player_id}")
async def websocket_endpoint(ws: WebSocket, code: str, player_id: str, pin: Optional[str] = None):
    """Seated players connect with ``?pin=``; any other id joins as a spectator."""
    code = code.upper()

    summary = await table_manager.get_table_summary(code)
    if summary is None:
        await ws.close(code=4004, reason="Table not found")
        return

    seated = {s.id for s in summary.seats}
    if player_id in seated:
        try:
            await table_manager.verify_player(code, player_id, pin or "")
        except (LookupError, PermissionError):
            await ws.close(code=4003, reason="Invalid PIN")
            return
        role = ClientRole.PLAYER
    else:
        role = ClientRole.SPECTATOR
    conn = await manager.connect(code, player_id, ws, role)

    # Send current state immediately on connect (reconnect support)
    try:
        await conn.send(json.dumps({"type": "table", "data": summary.model_dump(mode="json")}))
        try:
            viewer = player_id if role == ClientRole.PLAYER else None
            view = await table_manager.get_player_view(code, viewer)
            await conn.send(json.dumps({"type": "game_state", "data": view}))
        except ValueError:
            pass  # no hand dealt yet
        await manager.broadcast_to_all(code, json.dumps(manager.get_connection_info(code)))
    except Exception:
        logger.debug("Error sending initial state to %s in %s", player_id, code, exc_info=True)

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
                if msg.get("type") == "pong":
                    manager.record_pong(conn)
            except (json.JSONDecodeError, AttributeError):
                pass  # ignore malformed messages
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(code, conn)
        try:
            await manager.broadcast_to_all(code, json.dumps(manager.get_connection_info(code)))
        except Exception:
            logger.debug("Error broadcasting disconnect for %s in %s", player_id, code, exc_info=True)


# ---------- Helpers ----------


async def _broadcast_state(code: str, state: GameState) -> None:
    """Send each connected client its own redacted view."""
    await manager.broadcast_views(code, lambda viewer: player_view(state, viewer))


async def _sync_timer(code: str) -> None:
    """Update the action timer with the table's current deadline."""
    try:
        action_timer.set_deadline(code, await table_manager.get_action_deadline(code))
    except Exception:
        logger.warning("Failed to sync timer for table %s", code, exc_info=True)
