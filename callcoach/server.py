"""
callcoach server.

Backend that:
1. Accepts one WebSocket per agent browser session at /ws
2. Tracks live sales conversations from final transcript segments
3. Drives the coaching state machine (warmup, auto tips, capture windows)
4. Pushes AI-generated tips back to the browser as AI_TIP events
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .coaching import CoachingOrchestrator
from .config import BACKEND_API_KEY, CORS_ORIGIN, HOST, LOG_LEVEL, PORT, CoachingTimings
from .models import now_ms
from .store import CoachingStore
from .tip_engine import TipEngine

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("callcoach")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.store = CoachingStore()
    # Tests install their own generator and timings before startup
    if getattr(app.state, "tip_engine", None) is None:
        app.state.tip_engine = TipEngine()
    if getattr(app.state, "timings", None) is None:
        app.state.timings = CoachingTimings()
    if getattr(app.state, "api_key", None) is None:
        app.state.api_key = BACKEND_API_KEY
    logger.info(f"callcoach started (auth={'on' if app.state.api_key else 'off'})")
    yield
    app.state.store.close()
    logger.info("callcoach stopped")


app = FastAPI(title="callcoach - Real-Time Sales Coaching", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGIN,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": now_ms(),
        "activeConversations": len(app.state.store.conversations.active()),
    }


# ---------------------------------------------------------------------------
# WebSocket endpoint
# ---------------------------------------------------------------------------

@app.websocket("/ws")
async def coaching_websocket(websocket: WebSocket):
    """
    Main WebSocket endpoint. Every frame is JSON: { type, payload }.

    Protocol:
      Browser -> Server:
        - START_CONVERSATION { agentId, metadata? }
        - TRANSCRIPT         { conversationId, speaker, text, isFinal, timestamp, confidence? }
        - OPTION_SELECTED    { recommendationId, selectedOption }
        - REQUEST_NEXT_TIP   { conversationId, selectedOption, selectedScript, agentResponse?, ... }
        - END_CONVERSATION   { conversationId }
        - PING

      Server -> Browser:
        - CONVERSATION_STARTED { conversationId, timestamp }
        - AI_TIP               { recommendationId, conversationId, stage, heading, context, options, timestamp }
        - CONVERSATION_ENDED   { conversationId, timestamp }
        - PONG                 { timestamp }
        - ERROR                { conversationId?, message, code, timestamp }
    """
    api_key = websocket.app.state.api_key
    if api_key and websocket.query_params.get("apiKey") != api_key:
        logger.warning(f"Rejected WebSocket from {websocket.client}: invalid API key")
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.info(f"Browser WebSocket connected: {websocket.client}")

    orchestrator = CoachingOrchestrator(
        websocket.app.state.store,
        websocket.app.state.tip_engine,
        websocket.send_json,
        websocket.app.state.timings,
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON frame: {e}")
                await orchestrator.send_error("Invalid message format", "INVALID_MESSAGE")
                continue
            await orchestrator.handle_message(data)

    except WebSocketDisconnect:
        logger.info("Browser disconnected")
    except Exception as e:
        # "Cannot call receive once a disconnect message" is normal on close
        if "disconnect" in str(e).lower():
            logger.info("Browser disconnected (receive after close)")
        else:
            logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        orchestrator.close()


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "callcoach.server:app",
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL.lower(),
    )
