"""
FastAPI application: the khobot HTTP entry point.

The upstream auth layer authenticates the caller and forwards the user id
in the X-User-Id header. Every endpoint maps onto one AskPipeline operation;
KhobotError subclasses become JSON errors with their own status code.
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from khobot import __version__
from khobot.config import get_config
from khobot.errors import InvalidInput, KhobotError
from khobot.pipeline import AskPipeline

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"

# ---------------------------------------------------------------------------
# Globals: initialized at startup
# ---------------------------------------------------------------------------
pipeline: AskPipeline | None = None
sweeper: asyncio.Task | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


async def _sweep_loop(pipe: AskPipeline, interval_seconds: float):
    """Delete expired conversations on a fixed interval until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await pipe.sweep_expired()
        except Exception as e:
            logger.warning("Conversation sweep failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global pipeline, sweeper

    cfg = get_config()
    _setup_logging(cfg)

    pipeline = AskPipeline.from_config(cfg)
    interval = float(cfg.get("storage", {}).get("sweep_interval_minutes", 30)) * 60
    sweeper = asyncio.create_task(_sweep_loop(pipeline, interval))

    s = pipeline.settings
    logger.info(
        "khobot %s started: model=%s, daily limit=%d, monthly budget=%.2f",
        __version__, s.model, s.daily_question_limit, s.monthly_budget_usd,
    )

    yield

    sweeper.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper
    logger.info("khobot shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="khobot",
    description="Grounded Q&A over warehouse data.",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(KhobotError)
async def _khobot_error(request: Request, exc: KhobotError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def _user(request: Request) -> str:
    return request.headers.get(USER_HEADER, "")


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInput("invalid JSON")
    if not isinstance(body, dict):
        raise InvalidInput("JSON body must be an object")
    return body


def _pipe() -> AskPipeline:
    if pipeline is None:
        raise KhobotError("Service not initialized")
    return pipeline


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

@app.post("/ai/ask")
async def ask(request: Request):
    body = await _body(request)
    result = await _pipe().ask(
        body.get("question", ""),
        _user(request),
        body.get("conversationId"),
    )
    return JSONResponse(result)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

@app.get("/ai/usage")
async def daily_usage(request: Request):
    return JSONResponse(await _pipe().get_daily_usage(_user(request)))


@app.get("/ai/usage/month")
async def monthly_usage():
    return JSONResponse(await _pipe().get_monthly_usage())


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.get("/ai/conversations")
async def list_conversations(request: Request, limit: int = 20):
    return JSONResponse({"data": await _pipe().list_conversations(_user(request), limit)})


@app.get("/ai/conversations/{conversation_id}/history")
async def conversation_history(
    request: Request,
    conversation_id: str,
    limit: int = 20,
    cursor: int | None = None,
):
    page = await _pipe().get_conversation_history(_user(request), conversation_id, limit, cursor)
    return JSONResponse(page)


@app.delete("/ai/conversations/{conversation_id}")
async def delete_conversation(request: Request, conversation_id: str):
    await _pipe().delete_conversation(_user(request), conversation_id)
    return Response(status_code=204)


@app.delete("/ai/conversations/{conversation_id}/history")
async def clear_conversation(request: Request, conversation_id: str):
    await _pipe().clear_conversation_history(_user(request), conversation_id)
    return Response(status_code=204)


@app.patch("/ai/conversations/{conversation_id}/title")
async def update_title(request: Request, conversation_id: str):
    body = await _body(request)
    result = await _pipe().update_conversation_title(
        _user(request), conversation_id, body.get("title", "")
    )
    return JSONResponse(result)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

@app.post("/ai/feedback")
async def create_feedback(request: Request):
    body = await _body(request)
    return JSONResponse(await _pipe().create_feedback(_user(request), body), status_code=201)


@app.get("/ai/feedback")
async def list_feedback(request: Request, conversationId: str | None = None, limit: int = 20):
    rows = await _pipe().list_feedback(_user(request), conversationId, limit)
    return JSONResponse({"data": rows})


@app.get("/health")
async def health():
    return JSONResponse({"status": "ok", "version": __version__})
