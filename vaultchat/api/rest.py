"""REST API for the vault assistant.

Endpoints:
  POST   /chat                  - Run one turn {message, conversation_id?}
  POST   /chat/{id}/cancel      - Stop the active turn of a conversation
  GET    /conversations         - List stored conversations (newest first)
  GET    /conversations/{id}    - Full conversation (messages + summary)
  DELETE /conversations/{id}    - Delete one conversation
  DELETE /conversations         - Delete all conversations (409 while any turn runs)
  POST   /conversations/{id}/clear - Empty a conversation's history and summary
  POST   /conversations/{id}/save  - Persist an open conversation (auto_save off)
  POST   /ask                   - Quick question about one vault file
  GET    /health                - Health check
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from vaultchat.api.errors import (
    ApiError,
    ConfigurationError,
    ErrorKind,
    TurnInProgressError,
    user_notice,
)
from vaultchat.api.runner import AgentRunner, TurnStatus
from vaultchat.api.vault_tools import read_file_tool
from vaultchat.config import Settings
from vaultchat.storage.conversations import ConversationStore

logger = logging.getLogger(__name__)

_KIND_STATUS: dict[str, int] = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.OVERLOADED: 503,
    ErrorKind.SERVER_ERROR: 502,
    ErrorKind.NETWORK: 502,
    ErrorKind.UNKNOWN: 502,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.UNAUTHENTICATED: 401,
}


def status_for_kind(kind: str | None) -> int:
    """HTTP status for a failed turn's error kind."""
    if kind is None:
        return 500
    if kind == ConfigurationError.__name__:
        return 503
    return _KIND_STATUS.get(kind, 500)


def _error_response(exc: BaseException, status_code: int) -> JSONResponse:
    notice = user_notice(exc)
    kind = str(exc.kind) if isinstance(exc, ApiError) else type(exc).__name__
    return JSONResponse(
        {"error": str(exc), "notice": notice.notice, "detail": notice.detail, "kind": kind},
        status_code=status_code,
    )


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    runner: AgentRunner,
    store: ConversationStore,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> JSONResponse:
        """POST /chat - Run one conversational turn."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        message = body.get("message")
        if not message or not isinstance(message, str):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)

        try:
            outcome = await runner.run_turn(
                body.get("conversation_id"),
                message,
                active_file=body.get("active_file"),
            )
        except TurnInProgressError as e:
            return _error_response(e, 409)

        result = outcome.to_dict()
        if outcome.status == TurnStatus.FAILED:
            result["error"] = outcome.notice
            result["kind"] = outcome.error_kind
            return JSONResponse(result, status_code=status_for_kind(outcome.error_kind))
        return JSONResponse(result)

    async def cancel_chat(request: Request) -> JSONResponse:
        """POST /chat/{conversation_id}/cancel - Stop after the current step."""
        conversation_id = request.path_params["conversation_id"]
        if not runner.cancel(conversation_id):
            return JSONResponse(
                {"error": "No active turn for conversation", "conversation_id": conversation_id},
                status_code=404,
            )
        return JSONResponse({"status": "cancelling", "conversation_id": conversation_id})

    async def list_conversations(request: Request) -> JSONResponse:
        """GET /conversations - Metadata, most recently updated first."""
        metas = await store.list()
        return JSONResponse({"conversations": [m.to_dict() for m in metas], "count": len(metas)})

    async def get_conversation(request: Request) -> JSONResponse:
        """GET /conversations/{conversation_id}"""
        conversation_id = request.path_params["conversation_id"]
        conversation = await store.load(conversation_id)
        if conversation is None:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(conversation.to_dict())

    async def delete_conversation(request: Request) -> JSONResponse:
        """DELETE /conversations/{conversation_id}"""
        conversation_id = request.path_params["conversation_id"]
        if runner.is_active(conversation_id):
            return _error_response(TurnInProgressError(conversation_id), 409)
        deleted = await store.delete(conversation_id)
        await runner.forget(conversation_id)
        if not deleted:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "deleted", "conversation_id": conversation_id})

    async def clear_conversations(request: Request) -> JSONResponse:
        """DELETE /conversations - Remove every stored conversation."""
        active = runner.active_conversations()
        if active:
            return _error_response(TurnInProgressError(active[0]), 409)
        ids = [m.id for m in await store.list()]
        count = await store.clear()
        for conversation_id in ids:
            await runner.forget(conversation_id)
        return JSONResponse({"status": "cleared", "count": count})

    async def clear_conversation(request: Request) -> JSONResponse:
        """POST /conversations/{conversation_id}/clear - Empty history, keep the id."""
        conversation_id = request.path_params["conversation_id"]
        try:
            cleared = await runner.clear_conversation(conversation_id)
        except TurnInProgressError as e:
            return _error_response(e, 409)
        if not cleared:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "cleared", "conversation_id": conversation_id})

    async def save_conversation(request: Request) -> JSONResponse:
        """POST /conversations/{conversation_id}/save - Persist an open conversation."""
        conversation_id = request.path_params["conversation_id"]
        try:
            saved = await runner.save_conversation(conversation_id)
        except TurnInProgressError as e:
            return _error_response(e, 409)
        if not saved:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse({"status": "saved", "conversation_id": conversation_id})

    async def ask(request: Request) -> JSONResponse:
        """POST /ask - Single-shot question about one file, no tools."""
        body = await _json_body(request)
        if body is None:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        question = body.get("question")
        path = body.get("path")
        if not question or not path:
            return JSONResponse({"error": "Missing required fields: question, path"}, status_code=400)

        content = await read_file_tool(
            path, _vault_dir=settings.vault_dir, _max_chars=settings.vault_max_file_chars
        )
        if content.startswith("Error: File not found"):
            return JSONResponse({"error": content}, status_code=404)
        if content.startswith("Error: Path"):
            return JSONResponse({"error": content}, status_code=400)

        try:
            answer = await runner.quick_ask(question, content)
        except ApiError as e:
            logger.error("Quick ask failed: %s", e)
            return _error_response(e, status_for_kind(e.kind))
        except ConfigurationError as e:
            return _error_response(e, 503)
        return JSONResponse({"answer": answer, "path": path})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({
            "status": "healthy",
            "model": settings.model,
            "api_key_configured": bool(settings.anthropic_api_key),
            "conversations": len(store),
        })

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/{conversation_id}/cancel", cancel_chat, methods=["POST"]),
        Route("/conversations", list_conversations, methods=["GET"]),
        Route("/conversations", clear_conversations, methods=["DELETE"]),
        Route("/conversations/{conversation_id}", get_conversation, methods=["GET"]),
        Route("/conversations/{conversation_id}", delete_conversation, methods=["DELETE"]),
        Route("/conversations/{conversation_id}/clear", clear_conversation, methods=["POST"]),
        Route("/conversations/{conversation_id}/save", save_conversation, methods=["POST"]),
        Route("/ask", ask, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
