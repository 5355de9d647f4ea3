"""FastAPI application for the student support chat router."""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Union

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from starlette.responses import JSONResponse

from chat_router.admin import admin_router
from chat_router.auth import AuthenticatedUser, require_student
from chat_router.config import load_config
from chat_router.emergency import emergency_router
from chat_router.errors import RateLimitExceeded
from chat_router.orchestrator import ChatOrchestrator, parse_history
from chat_router.store import InMemoryStore
from chat_router.upstream import GeminiClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level))

    http_client = httpx.AsyncClient(
        base_url=config.gemini_base_url,
        timeout=httpx.Timeout(10.0, read=config.upstream_timeout_seconds, write=30.0),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )

    store = InMemoryStore()
    orchestrator = ChatOrchestrator(config, GeminiClient(http_client), store)
    await orchestrator.initialize()

    app.state.config = config
    app.state.http_client = http_client
    app.state.store = store
    app.state.orchestrator = orchestrator

    logger.info("Chat router started with %d keys", len(config.api_keys))

    yield

    await orchestrator.shutdown()
    await http_client.aclose()
    logger.info("Chat router stopped")


app = FastAPI(title="Student Support Chat Router", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(emergency_router)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    status = request.app.state.orchestrator.get_status()
    return {
        "service": "Student Support Chat Router",
        "status": "running",
        "keys_available": status["keys_available"],
        "total_keys": status["total_keys"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with key pool and queue status."""
    status = request.app.state.orchestrator.get_status()
    return {
        "status": "healthy",
        "keys_available": status["keys_available"],
        "total_keys": status["total_keys"],
        "in_flight": status["in_flight"],
        "queued": status["queued"],
    }


@app.post("/chat", response_model=None)
async def chat(
    request: Request, user: AuthenticatedUser = Depends(require_student)
) -> Union[Dict[str, object], JSONResponse]:
    """Answer a student's message, escalating to crisis contacts on risk phrases."""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Message is required")

    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    history = parse_history(body.get("conversationHistory"))

    try:
        reply = await request.app.state.orchestrator.handle(user.id, message, history)
    except RateLimitExceeded as exc:
        return JSONResponse(content={"message": str(exc)}, status_code=429)
    except Exception:
        logger.exception("Chat handling failed for user %s", user.id)
        return JSONResponse(
            content={"message": "Failed to process chat message"}, status_code=500
        )

    return reply.to_dict()


if __name__ == "__main__":
    settings = load_config()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
