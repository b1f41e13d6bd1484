"""FastAPI application for the group chat assistant."""

import logging

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatmodels import (
    ContextPreview,
    ContextSettings,
    PurchaseResult,
    Summary,
    SummaryStats,
    TokenUsageReport,
)
from groupchat.config import settings
from groupchat.errors import (
    GroupChatError,
    InvariantViolation,
    NotChatMember,
    ProviderUnavailable,
    QuotaExceeded,
    StorageUnavailable,
    SummarizationDisabled,
    SummarizationFailed,
    SummarizationInProgress,
)
from groupchat.models import (
    ContextSettingsUpdate,
    ForceSummaryResponse,
    MessageListResponse,
    PruneResponse,
    SendMessageRequest,
    SendMessageResponse,
    SummaryListResponse,
    TokenPurchaseRequest,
)
from groupchat.runtime import get_runtime
from groupchat.sse import create_sse_response, event_stream

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Groupchat API",
    description="Group chat assistant with context assembly, summarization and token budgets",
    version="0.3.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS: dict[type[GroupChatError], int] = {
    QuotaExceeded: 402,
    NotChatMember: 403,
    SummarizationDisabled: 400,
    SummarizationInProgress: 409,
    SummarizationFailed: 502,
    ProviderUnavailable: 503,
    StorageUnavailable: 503,
    InvariantViolation: 500,
}


@app.exception_handler(GroupChatError)
async def groupchat_error_handler(request: Request, exc: GroupChatError):
    """Map domain errors to HTTP responses."""
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500
    )
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    detail = exc.user_message() if isinstance(exc, QuotaExceeded) else str(exc)
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.on_event("startup")
async def startup_event():
    """Connect storage, launch DBOS and start the watchdog."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    runtime = get_runtime()

    await runtime.store.connect()
    await runtime.store.ensure_tables_exist()

    if settings.job_backend == "dbos":
        # Workflows are registered when the runtime builds its scheduler
        from dbos import DBOS

        DBOS.launch()

    runtime.watchdog.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    runtime = get_runtime()
    await runtime.watchdog.stop()
    await runtime.orchestrator.drain()
    await runtime.store.disconnect()


def resolve_user_id(user_id: str | None) -> str:
    """Caller identity. Authentication happens in front of this service."""
    return user_id or "local-dev-user"


async def require_member(chat_id: str, user_id: str):
    if not await get_runtime().store.is_chat_member(chat_id, user_id):
        raise NotChatMember(f"User {user_id} is not a member of chat {chat_id}")


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Groupchat API", "version": "0.3.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "storage": settings.storage_backend,
        "jobs": settings.job_backend,
        "llm": settings.llm_backend,
    }


# ============= Message Endpoints =============


@app.post("/chats/{chat_id}/messages", response_model=SendMessageResponse)
async def send_message(
    chat_id: str,
    request: SendMessageRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Post a message. Commands addressed to the assistant are answered inline."""
    user_id = resolve_user_id(user_id)
    result = await get_runtime().handler.handle_message(chat_id, user_id, request.content)
    return SendMessageResponse(message=result.message, replies=result.replies)


@app.get("/chats/{chat_id}/messages", response_model=MessageListResponse)
async def list_messages(
    chat_id: str,
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Most recent messages of a chat, oldest first."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)

    store = get_runtime().store
    messages = await store.list_messages(chat_id, limit=limit, newest_first=True)
    messages.reverse()
    total = await store.count_messages(chat_id)
    return MessageListResponse(messages=messages, total=total)


# ============= Context Endpoints =============


@app.get("/chats/{chat_id}/context/settings", response_model=ContextSettings)
async def get_context_settings(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Get a chat's context settings."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    return await get_runtime().selector.context_settings(chat_id)


@app.put("/chats/{chat_id}/context/settings", response_model=ContextSettings)
async def update_context_settings(
    chat_id: str,
    update: ContextSettingsUpdate,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Change which history the assistant sees."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)

    runtime = get_runtime()
    context_settings = await runtime.selector.context_settings(chat_id)
    if update.mode is not None:
        context_settings.mode = update.mode
    if update.use_summary is not None:
        context_settings.use_summary = update.use_summary

    saved = await runtime.store.save_context_settings(context_settings)
    logger.info(
        f"Context settings for chat {chat_id} set by {user_id}: "
        f"mode={saved.mode.value}, use_summary={saved.use_summary}"
    )
    return saved


@app.get("/chats/{chat_id}/context", response_model=ContextPreview)
async def preview_context(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """What the assistant would see if asked now."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    return await get_runtime().assembler.preview(chat_id)


# ============= Summary Endpoints =============


@app.get("/chats/{chat_id}/summaries", response_model=SummaryListResponse)
async def list_summaries(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """All retained summary versions, newest first."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    summaries = await get_runtime().summary_store.history(chat_id)
    return SummaryListResponse(summaries=summaries, total=len(summaries))


@app.get("/chats/{chat_id}/summaries/latest", response_model=Summary)
async def get_latest_summary(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """The authoritative summary."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    summary = await get_runtime().summary_store.latest(chat_id)
    if not summary:
        raise HTTPException(status_code=404, detail="No summary yet")
    return summary


@app.get("/chats/{chat_id}/summaries/stats", response_model=SummaryStats)
async def get_summary_stats(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Totals over the retained summary versions."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    return await get_runtime().summary_store.stats(chat_id)


@app.post("/chats/{chat_id}/summaries", response_model=ForceSummaryResponse)
async def force_summary(
    chat_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Summarize now, paid from the caller's quota."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)
    summary = await get_runtime().orchestrator.force(chat_id, user_id)
    return ForceSummaryResponse(summary=summary)


@app.delete("/chats/{chat_id}/summaries", response_model=PruneResponse)
async def prune_summaries(
    chat_id: str,
    keep_versions: int = Query(5, ge=1),
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Delete all but the newest keep_versions summaries."""
    user_id = resolve_user_id(user_id)
    await require_member(chat_id, user_id)

    summary_store = get_runtime().summary_store
    deleted = await summary_store.prune(chat_id, keep_versions)
    kept = len(await summary_store.history(chat_id))
    return PruneResponse(deleted=deleted, kept=kept)


# ============= Token Endpoints =============


@app.get("/tokens", response_model=TokenUsageReport)
async def get_token_usage(
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """The caller's quota for this month, recent LM calls, purchases and lifetime use."""
    user_id = resolve_user_id(user_id)
    return await get_runtime().ledger.get_usage(user_id, limit)


@app.post("/tokens/purchases", response_model=PurchaseResult)
async def add_token_purchase(
    request: TokenPurchaseRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Credit tokens the caller has already paid for.

    The payment itself is confirmed before this call, and the caller is
    authenticated in front of the service. Replaying the same payment credits
    nothing.
    """
    user_id = resolve_user_id(user_id)
    return await get_runtime().ledger.add_purchased_tokens(
        user_id,
        request.tokens_added,
        request.amount_paid_cents,
        request.payment_provider,
        request.payment_id,
    )


# ============= Events =============


@app.get("/events")
async def events(
    request: Request,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Server-sent events: low balance, summary created and summary failed."""
    user_id = resolve_user_id(user_id)
    return create_sse_response(event_stream(user_id, request))


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "groupchat.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )


if __name__ == "__main__":
    run()
