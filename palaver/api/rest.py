"""REST API for Palaver.

Endpoints:
  POST /chat                        - Run one turn, get the reply
  GET  /conversations/{id}/events   - Replay a conversation's event log
  GET  /health                      - Health check (default workspace readable)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from palaver.api.runner import AgentRunner, ModelBackendError
from palaver.config import Settings
from palaver.storage.event_log import EventLog
from palaver.workspace import WorkspaceError, WorkspaceLoader

logger = logging.getLogger(__name__)


def create_app(
    runner: AgentRunner,
    event_log: EventLog,
    workspaces: WorkspaceLoader,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Send a message, get a response."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        text = body.get("text") or body.get("message")
        if not isinstance(text, str) or not text.strip():
            return JSONResponse({"error": "Missing required field: text"}, status_code=400)

        conversation_id = str(body.get("conversation_id") or body.get("sessionId") or uuid4())
        model = body.get("model") or None
        agent_id = body.get("agent_id") or None

        try:
            outcome = await asyncio.wait_for(
                runner.run_turn(conversation_id, text, agent_id=agent_id, model=model),
                timeout=settings.turn_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Turn timed out after %ds (conversation=%s)", settings.turn_timeout, conversation_id)
            return JSONResponse({"error": f"Turn timed out after {settings.turn_timeout}s"}, status_code=504)
        except ModelBackendError as e:
            logger.error("Model backend error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=502)
        except (ValueError, WorkspaceError) as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception as e:
            logger.error("Chat error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        return JSONResponse({
            "conversation_id": conversation_id,
            "reply": outcome.assistant_text,
            "rounds": outcome.rounds,
            "tool_calls": outcome.tool_calls,
            "limit_reached": outcome.limit_reached,
        })

    async def conversation_events(request: Request) -> JSONResponse:
        """GET /conversations/{id}/events - Full event log in append order."""
        conversation_id = request.path_params["conversation_id"]
        try:
            events = await event_log.read_all(conversation_id)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except Exception as e:
            logger.error("Replay error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        return JSONResponse({
            "conversation_id": conversation_id,
            "events": [e.model_dump(mode="json", by_alias=True, exclude_none=True) for e in events],
            "total": len(events),
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            await asyncio.to_thread(workspaces.load, settings.agent_id)
            return JSONResponse({"status": "healthy", "agent_id": settings.agent_id, "model": settings.model})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/conversations/{conversation_id:path}/events", conversation_events),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
