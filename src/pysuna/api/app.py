from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..app_context import AppContext
from ..cache.memory import set_session
from ..config.models import AppConfig
from ..errors import ThreadNotFoundError
from ..llm.models import ChatProvider
from ..log import log_fields
from ..threads.models import ThreadConfig

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    tools: int
    cache: str


class MessageOut(BaseModel):
    message_id: str
    role: str
    content: str
    created_at: str
    metadata: Optional[dict[str, Any]] = None


def _error(status: int, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": message, "requestId": request_id},
        headers={"X-Request-ID": request_id},
    )


def create_app(
    config: AppConfig | None = None,
    *,
    context: AppContext | None = None,
    provider: ChatProvider | None = None,
) -> FastAPI:
    """Build the HTTP app.

    Pass a ready `context` to share one; otherwise the lifespan builds one
    from `config` (and `provider`, if given) and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = context is None
        ctx = context or await AppContext.create(config or AppConfig(), provider)
        app.state.context = ctx
        logger.info("pysuna API started")
        try:
            yield
        finally:
            if owned:
                await ctx.close()
            logger.info("pysuna API stopped")

    app = FastAPI(
        title="pysuna",
        description="Tool-using chat agent with sandboxed shell, files, search and browsing",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.post("/api/chat")
    async def chat(request: Request):
        request_id = uuid.uuid4().hex
        ctx: AppContext = request.app.state.context
        try:
            try:
                body = await request.json()
            except ValueError:
                body = None
            if not isinstance(body, dict):
                body = {}
            messages = body.get("messages")
            thread_id = body.get("threadId")
            user_id = body.get("userId") or "anonymous"
            logger.info(
                "Chat request received",
                extra=log_fields(
                    request_id=request_id,
                    message_count=len(messages) if isinstance(messages, list) else None,
                    thread_id=thread_id,
                    user_id=user_id,
                ),
            )

            if not isinstance(messages, list):
                return _error(400, "Invalid messages format", request_id)
            last = messages[-1] if messages else None
            if not isinstance(last, dict) or last.get("role") != "user":
                return _error(400, "No user message found", request_id)

            if not thread_id:
                thread = await ctx.threads.create_thread(
                    ThreadConfig(account_id=user_id, title="New Conversation")
                )
                thread_id = thread.thread_id
                logger.info("Created new thread", extra=log_fields(request_id=request_id, thread_id=thread_id))

            await ctx.threads.add_message(thread_id, "user", str(last.get("content") or ""))

            session_id = body.get("sessionId")
            if session_id and ctx.cache is not None:
                try:
                    await set_session(
                        ctx.cache,
                        str(session_id),
                        {"userId": user_id, "threadId": thread_id, "requestId": request_id},
                        ttl=ctx.config.cache.session_ttl,
                    )
                except Exception:
                    logger.warning(
                        "Recording session failed", exc_info=True, extra=log_fields(request_id=request_id)
                    )
        except ThreadNotFoundError:
            return _error(404, "Thread not found", request_id)
        except Exception:
            logger.exception("Chat request failed", extra=log_fields(request_id=request_id))
            return _error(500, "Internal server error", request_id)

        return StreamingResponse(
            ctx.chat.stream_reply(thread_id, user_id, request_id),
            media_type="text/plain; charset=utf-8",
            headers={"X-Thread-ID": thread_id, "X-Request-ID": request_id},
        )

    @app.get("/api/health", response_model=HealthResponse)
    async def health(request: Request):
        ctx: AppContext = request.app.state.context
        cache = "disabled"
        if ctx.cache is not None:
            cache = "ok" if await ctx.cache.ping() else "unavailable"
        return HealthResponse(status="healthy", tools=len(ctx.registry.get_all_tools()), cache=cache)

    @app.get("/api/tools")
    async def tools(request: Request):
        registry = request.app.state.context.registry
        return {
            "stats": registry.get_stats(),
            "functions": registry.get_function_schemas(),
            "tags": registry.get_tag_schemas(),
        }

    @app.get("/api/threads/{thread_id}/messages", response_model=list[MessageOut])
    async def thread_messages(thread_id: str, request: Request, limit: Optional[int] = None):
        ctx: AppContext = request.app.state.context
        request_id = uuid.uuid4().hex
        try:
            if await ctx.threads.get_thread(thread_id) is None:
                return _error(404, "Thread not found", request_id)
            messages = await ctx.threads.get_messages(thread_id, limit)
        except Exception:
            logger.exception("Listing messages failed", extra=log_fields(request_id=request_id, thread_id=thread_id))
            return _error(500, "Internal server error", request_id)
        return [
            MessageOut(
                message_id=m.message_id,
                role=m.role,
                content=m.content,
                created_at=m.created_at,
                metadata=m.metadata,
            )
            for m in messages
        ]

    @app.delete("/api/threads/{thread_id}")
    async def delete_thread(thread_id: str, request: Request):
        ctx: AppContext = request.app.state.context
        request_id = uuid.uuid4().hex
        try:
            deleted = await ctx.threads.delete_thread(thread_id)
        except Exception:
            logger.exception("Deleting thread failed", extra=log_fields(request_id=request_id, thread_id=thread_id))
            return _error(500, "Internal server error", request_id)
        if not deleted:
            return _error(404, "Thread not found", request_id)
        return {"deleted": True, "threadId": thread_id}

    return app
