"""
Meeting STT service FastAPI application.

Bridges a calling platform to the transcription pipeline: the call layer
streams captured PCM frames over a websocket, one transcription session per
meeting, and reads the persisted transcript back over HTTP.

Endpoints:
    WebSocket /api/v1/sessions/{meeting_id}/audio - Stream call audio (query: call_id)
    GET /api/v1/sessions/{meeting_id}/transcript - Current transcript
    GET /api/v1/sessions/{meeting_id}/history - Saved snapshots in time order
    POST /api/v1/sessions/{meeting_id}/reconnect - Manual backend reconnect
    GET /health - Health check
    GET /metrics - Prometheus metrics
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import Response

from shared.observability import get_metrics_response, set_active_sessions, setup_metrics
from shared.redis_client import close_redis_client, get_redis_client, get_redis_info, ping_redis

from .call_handler import CALL_ESTABLISHED, CALL_TERMINATED, CallHandler
from .config import TranscriberConfig
from .pipeline import TranscriptionPipeline, TransportFactory
from .store import TranscriptStore
from .transports import SpeechController

SERVICE_NAME = "meeting-stt"
SERVICE_VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global state
config: Optional[TranscriberConfig] = None
store: Optional[TranscriptStore] = None
redis_client = None
active_sessions: Dict[str, CallHandler] = {}
app_start_time: float = time.time()

# Hooks for embedding code: a custom transport factory, or a vendor
# controller per session when MEETING_STT_BACKEND=controller
transport_factory: Optional[TransportFactory] = None
controller_factory: Optional[Callable[[str], SpeechController]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for application startup/shutdown"""
    global config, store, redis_client

    logger.info("=" * 70)
    logger.info("🚀 Starting Meeting STT Service")
    logger.info("=" * 70)

    config = TranscriberConfig.from_env()
    logger.info(
        f"📋 Configuration loaded | Backend: {config.backend} | Language: {config.language} | "
        f"Flush: {config.flush_interval_s}s"
    )
    setup_metrics(SERVICE_NAME, SERVICE_VERSION)

    store = TranscriptStore(None, ttl_seconds=config.store_ttl_s)

    logger.info("=" * 70)
    logger.info("✅ Meeting STT Service Ready (Redis connecting in background)")
    logger.info("=" * 70)

    async def connect_redis_background():
        """Connect to Redis in background without blocking service startup"""
        global redis_client
        logger.info("🔌 Connecting to Redis (background)...")

        for retry_attempt in range(5):
            try:
                redis_client = await asyncio.wait_for(get_redis_client(), timeout=5.0)
                store.attach(redis_client)
                logger.info(f"✅ Redis connected (attempt {retry_attempt + 1})")
                break
            except asyncio.TimeoutError:
                logger.warning(f"⏳ Redis connection timeout (attempt {retry_attempt + 1}/5)")
            except Exception as e:
                logger.warning(f"⚠️ Redis error: {e} (attempt {retry_attempt + 1}/5)")
            if retry_attempt < 4:
                await asyncio.sleep(2.0)

        if redis_client is None:
            logger.warning("⚠️ Redis unavailable - transcripts will not be persisted")

    redis_task = asyncio.create_task(connect_redis_background())

    yield

    # Shutdown
    logger.info("=" * 70)
    logger.info("🛑 Shutting down Meeting STT Service...")
    logger.info("=" * 70)

    if not redis_task.done():
        redis_task.cancel()
        try:
            await redis_task
        except asyncio.CancelledError:
            pass

    for meeting_id, handler in list(active_sessions.items()):
        logger.info(f"[{meeting_id}] Stopping active session")
        try:
            await handler.pipeline.stop()
        except Exception as e:
            logger.error(f"[{meeting_id}] ❌ Error stopping session: {e}")
    active_sessions.clear()
    set_active_sessions(0)

    logger.info("🔌 Closing Redis connection...")
    await close_redis_client()
    redis_client = None
    logger.info("✅ Meeting STT Service stopped")


app = FastAPI(
    title="Meeting STT Service",
    description="Real-time meeting transcription pipeline",
    version=SERVICE_VERSION,
    lifespan=lifespan
)


def build_pipeline(meeting_id: str) -> TranscriptionPipeline:
    controller = controller_factory(meeting_id) if controller_factory else None
    return TranscriptionPipeline(
        config,
        store,
        transport_factory=transport_factory,
        controller=controller,
    )


@app.websocket("/api/v1/sessions/{meeting_id}/audio")
async def session_audio(websocket: WebSocket, meeting_id: str, call_id: Optional[str] = Query(None)):
    """
    Audio bridge for one call.

    Binary messages are PCM16 frames. Text messages are JSON commands:
    {"type": "participants", "added": [...], "removed": [...]} or {"type": "stop"}.
    """
    await websocket.accept()

    if meeting_id in active_sessions:
        await websocket.send_json({
            "type": "error",
            "text": "Session already active",
            "session_id": meeting_id,
            "timestamp": time.time()
        })
        await websocket.close(code=4409)
        return

    if config.backend == "controller" and controller_factory is None and transport_factory is None:
        logger.error(f"[{meeting_id}] ❌ Controller backend selected but no speech controller is installed")
        await websocket.send_json({
            "type": "error",
            "text": "Recognition backend unavailable",
            "session_id": meeting_id,
            "timestamp": time.time()
        })
        await websocket.close(code=1011)
        return

    handler = CallHandler(build_pipeline(meeting_id), meeting_id, call_id)
    active_sessions[meeting_id] = handler
    set_active_sessions(len(active_sessions))

    logger.info("=" * 70)
    logger.info(f"[{meeting_id}] 🔌 Call audio bridge connected")
    logger.info(f"[{meeting_id}]    Call ID: {call_id}")
    logger.info(f"[{meeting_id}]    Remote: {websocket.client}")
    logger.info("=" * 70)

    frames_received = 0
    try:
        await handler.on_call_updated("", CALL_ESTABLISHED)
        await websocket.send_json({
            "type": "connected",
            "session_id": meeting_id,
            "call_id": call_id,
            "timestamp": time.time()
        })

        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break

            data = message.get("bytes")
            if data is not None:
                frames_received += 1
                handler.on_audio(data)
                continue

            text = message.get("text")
            if not text:
                continue
            try:
                command = json.loads(text)
            except json.JSONDecodeError:
                await websocket.send_json({
                    "type": "error",
                    "text": "Invalid JSON command",
                    "session_id": meeting_id,
                    "timestamp": time.time()
                })
                continue

            command_type = command.get("type") if isinstance(command, dict) else None
            if command_type == "participants":
                handler.on_participants_updated(command.get("added") or [], command.get("removed") or [])
            elif command_type == "stop":
                break
            else:
                logger.debug(f"[{meeting_id}] Unknown command: {command_type}")

    except (WebSocketDisconnect, RuntimeError):
        logger.info(f"[{meeting_id}] 🔌 Call audio bridge disconnected")

    except Exception as e:
        logger.error(f"[{meeting_id}] ❌ Unexpected WebSocket error: {e}", exc_info=True)

    finally:
        logger.info(f"[{meeting_id}] 🧹 Cleaning up session | frames received: {frames_received}")
        try:
            await handler.on_call_updated(CALL_ESTABLISHED, CALL_TERMINATED)
        finally:
            active_sessions.pop(meeting_id, None)
            set_active_sessions(len(active_sessions))


@app.get("/api/v1/sessions/{meeting_id}/transcript")
async def get_transcript(meeting_id: str):
    """Current transcript: live when the session is active, otherwise from the store."""
    handler = active_sessions.get(meeting_id)
    if handler is not None and handler.pipeline.session is not None:
        session = handler.pipeline.session
        return {
            "session_id": meeting_id,
            "call_id": session.call_id,
            "text": session.transcript,
            "state": session.state.value,
            "participants": sorted(session.participants),
            "live": True,
        }

    snapshot = await store.get_snapshot(meeting_id) if store else None
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No transcript for session {meeting_id}")

    result = snapshot.to_dict()
    result["summary"] = await store.get_summary(meeting_id)
    result["live"] = False
    return result


@app.get("/api/v1/sessions/{meeting_id}/history")
async def get_history(
    meeting_id: str,
    count: Optional[int] = Query(None, ge=1, le=1000),
    ascending: bool = Query(False),
):
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    count = count or config.history_default_count
    history = await store.get_history(meeting_id, count=count, ascending=ascending)
    return {
        "session_id": meeting_id,
        "count": len(history),
        "snapshots": [snapshot.to_dict() for snapshot in history],
    }


@app.post("/api/v1/sessions/{meeting_id}/reconnect")
async def reconnect_session(meeting_id: str):
    handler = active_sessions.get(meeting_id)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Session {meeting_id} is not active")

    success = await handler.pipeline.reconnect()
    return {
        "session_id": meeting_id,
        "success": success,
        "state": handler.pipeline.session.state.value,
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Service health status
    """
    uptime_seconds = time.time() - app_start_time

    redis_connected = False
    if redis_client is not None:
        redis_connected = await ping_redis(redis_client)

    status = "healthy" if redis_connected else "degraded"

    return {
        "status": status,
        "service": SERVICE_NAME,
        "uptime_seconds": uptime_seconds,
        "backend": config.backend if config else None,
        "active_sessions": len(active_sessions),
        "sessions": {
            meeting_id: handler.pipeline.session.info()
            for meeting_id, handler in active_sessions.items()
            if handler.pipeline.session is not None
        },
        "redis_connected": redis_connected,
        "redis": await get_redis_info(redis_client) if redis_connected else None,
        "store": store.stats() if store else None,
    }


@app.get("/metrics")
async def get_metrics():
    """Prometheus metrics."""
    content, content_type = get_metrics_response()
    return Response(content=content, media_type=content_type)


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "meeting_stt.app:app",
        host="0.0.0.0",
        port=int(os.getenv("MEETING_STT_PORT", "8010")),
        log_level="info",
        reload=False
    )
