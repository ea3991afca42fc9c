"""
Ask pipeline: the orchestrator behind every khobot operation.

ask() runs one question through quota and budget checks, conversation
loading, routing, fact building, a cost pre-check, the grounded model call
and persistence, recording each state in a flight record. The remaining
operations (usage, conversations, feedback) are thin validated wrappers
over the store and the guard.

Storage and catalog calls are blocking SQLite, so they run in worker
threads; one ask() is one task and never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Callable

from khobot import flight_recorder as fr
from khobot.agents.facts import FactAssembler
from khobot.agents.router import IntentRouter, RoutingDecision
from khobot.config import AISettings, get_config
from khobot.errors import (
    BudgetExhausted,
    Forbidden,
    InvalidInput,
    KhobotError,
    ModelUnavailable,
    NotFound,
    PipelineError,
)
from khobot.flight_recorder import FlightRecord, FlightRecorderStore
from khobot.gateway import LLMGateway
from khobot.guard import BudgetGuard
from khobot.storage.catalog import Catalog, SQLiteCatalog
from khobot.storage.models import Feedback, Message, PendingSelection, SelectionOption, new_id
from khobot.storage.sqlite_store import SQLiteStore
from khobot.text import fold, normalize_question, truncate

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 80
MAX_CONVERSATION_ID_CHARS = 128
MIN_PAGE, MAX_PAGE = 1, 100


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ANSWER_SYSTEM_PROMPT = (
    "Ban la tro ly kho hang, tra loi dua tren du lieu duoc cung cap. "
    "Tra loi tu do, ro rang, ngan gon, bang ngon ngu cua cau hoi. "
    "Chi dung so lieu co trong Du lieu; khong tu suy doan. "
    "Neu found=false hoac khong co du lieu phu hop, noi ro la khong tim thay. "
    "Neu requested_metric khac 'all', chi tra loi gia tri requested_value. "
    "Neu hoi ve so thung: so thung = floor(ton kho / so luong moi thung), "
    "so du le = ton kho % so luong moi thung. "
    "Neu hoi ve tong so luong trong nhat ky kho, tong = total_quantity; "
    "so lan nhap/xuat = total. "
    "Neu du lieu la danh sach, liet ke day du tung phan tu. "
    "Khong giai thich ky thuat truy van."
)

TITLE_SYSTEM_PROMPT = (
    "Ban la tro ly dat tieu de doan chat. "
    "Tom tat cau hoi thanh tieu de ngan gon, toi da 8 tu, khong dau cau. "
    "Chi tra ve duy nhat tieu de."
)

SELECTION_HEADER = "Có nhiều kết quả phù hợp. Bạn muốn xem kết quả nào?"

# "2", "chọn 2", "kết quả số 2", "thứ 2"
SELECTION_PATTERNS = [
    re.compile(r"^\s*(\d{1,2})\s*[.)]?\s*$"),
    re.compile(r"\b(?:ket\s*qua(?:\s*so)?|kq|chon|option|so)\s*(\d{1,2})\b"),
    re.compile(r"\bthu\s*(\d{1,2})\b"),
]


def build_user_prompt(question: str, fact: dict) -> str:
    return f"Cau hoi: {question}\nDu lieu: {json.dumps(fact, ensure_ascii=False, default=str)}"


def fallback_title(question: str) -> str:
    return truncate(question, TITLE_MAX_CHARS)


def normalize_title(raw: str) -> str:
    """First line of a model-written title, without quotes or list markers."""
    line = (raw or "").strip().split("\n")[0]
    line = re.sub(r"^[\"'`\-\d.)\s]+", "", line)
    line = re.sub(r"[\"'`]+$", "", line).strip()
    return line[:TITLE_MAX_CHARS].strip()


def selection_message(options: list[SelectionOption]) -> str:
    lines = [SELECTION_HEADER]
    for opt in options:
        code = f" (mã: {opt.code})" if opt.code else ""
        lines.append(f"{opt.index}. {opt.name or 'Không rõ tên'}{code}")
    return "\n".join(lines)


def pick_option(question: str, options: list[SelectionOption]) -> SelectionOption | None:
    """The option a follow-up reply refers to, by number, code or name."""
    folded = fold(question)
    for pattern in SELECTION_PATTERNS:
        m = pattern.search(folded)
        if m:
            index = int(m.group(1))
            return next((o for o in options if o.index == index), None)
    for opt in options:
        if opt.code and re.search(rf"\b{re.escape(fold(opt.code))}\b", folded):
            return opt
    for opt in options:
        if opt.name and fold(opt.name) in folded:
            return opt
    return None


def _clamp(limit, default: int = 20) -> int:
    try:
        value = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        raise InvalidInput("limit must be an integer")
    return max(MIN_PAGE, min(MAX_PAGE, value))


def _require(value, message: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise InvalidInput(message)
    return text


def _optional(value) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class AskPipeline:
    """Composes guard, store, router, fact assembler and gateway."""

    def __init__(
        self,
        settings: AISettings,
        store: SQLiteStore,
        catalog: Catalog,
        gateway: LLMGateway | None = None,
        clock: Callable[[], datetime] | None = None,
        recorder: FlightRecorderStore | None = None,
    ):
        self.settings = settings.validate()
        self.store = store
        self.guard = BudgetGuard(store, settings, clock=clock)
        self.gateway = gateway or LLMGateway.from_settings(settings)
        if self.gateway.on_usage is None:
            self.gateway.on_usage = self.guard.record_usage
        if self.gateway.before_call is None:
            self.gateway.before_call = self.guard.precheck_call
        self.router = IntentRouter(self.gateway, settings.route_min_confidence)
        self.facts = FactAssembler(catalog, clock=clock)
        self.recorder = recorder or FlightRecorderStore()

    @classmethod
    def from_config(cls, cfg: dict | None = None) -> "AskPipeline":
        cfg = cfg if cfg is not None else get_config()
        storage = cfg.get("storage", {})
        return cls(
            settings=AISettings.from_config(cfg),
            store=SQLiteStore(storage.get("sqlite_path", "./data/khobot.db")),
            catalog=SQLiteCatalog(storage.get("catalog_path", "./data/catalog.db")),
        )

    # ── ask ──────────────────────────────────────────────────────────────────

    async def ask(self, question: str, user_id: str, conversation_id: str | None = None) -> dict:
        """Answer one question. Returns {answer, conversationId}."""
        rec = FlightRecord(user_id=user_id or "", conversation_id=conversation_id or "")
        try:
            return await self._ask(rec, question, user_id, conversation_id)
        except ModelUnavailable:
            rec.fail("model_unavailable")
            raise
        except KhobotError as e:
            rec.reject(type(e).__name__)
            raise
        except Exception as e:
            logger.exception("ask() crashed in state %s", rec.state)
            rec.fail("internal_error")
            raise PipelineError() from e
        finally:
            self.recorder.store(rec)
            logger.debug("%s", rec.render_text())

    async def _ask(
        self,
        rec: FlightRecord,
        question: str,
        user_id: str,
        conversation_id: str | None,
    ) -> dict:
        settings = self.settings

        rec.enter(fr.VALIDATING)
        user_id = _require(user_id, "User is required")
        if not isinstance(question, str):
            raise InvalidInput("Question must be a string")
        if conversation_id is not None and not isinstance(conversation_id, str):
            raise InvalidInput("ConversationId must be a string")
        question = normalize_question(question)
        if not question:
            raise InvalidInput("Question is required")
        if len(question) > settings.max_question_chars:
            raise InvalidInput("Question is too long")
        conversation_id = (conversation_id or "").strip() or new_id()
        if len(conversation_id) > MAX_CONVERSATION_ID_CHARS:
            raise InvalidInput("ConversationId is too long")
        if await asyncio.to_thread(self.store.owned_by_other, user_id, conversation_id):
            raise Forbidden()
        rec.conversation_id = conversation_id

        rec.enter(fr.QUOTA_CHECKING)
        count = await asyncio.to_thread(self.guard.assert_daily_limit, user_id)

        rec.enter(fr.BUDGET_CHECKING, questions_today=count)
        remaining = await asyncio.to_thread(self.guard.ensure_monthly_budget)

        rec.enter(fr.CONVERSATION_LOADING)
        conversation = await self._load_conversation(user_id, conversation_id, question)
        history = await asyncio.to_thread(
            self.store.recent_messages, user_id, conversation_id, settings.conversation_max_messages
        )
        resolved, forced = await self._resolve_selection(conversation, question)

        rec.enter(fr.ROUTING)
        if forced:
            decision = RoutingDecision(forced, 1.0, "selection")
        else:
            decision = await self.router.route(resolved)

        rec.enter(fr.FACT_BUILDING, domain=decision.domain, via=decision.via)
        fact = await self.facts.build_facts(decision.domain, resolved)

        if fact.get("candidates"):
            answer = await self._ask_to_choose(user_id, conversation_id, decision.domain, resolved, fact)
            rec.enter(fr.PERSISTING, deterministic=True)
            await self._persist(user_id, conversation_id, question, answer)
            rec.enter(fr.DONE)
            return {"answer": answer, "conversationId": conversation_id}

        rec.enter(fr.COST_ESTIMATING, fact=fact.get("type"), found=fact.get("found"))
        user_prompt = build_user_prompt(resolved, fact)
        prompt_texts = [ANSWER_SYSTEM_PROMPT] + [m.content for m in history] + [user_prompt]
        estimate = await asyncio.to_thread(self.guard.check_call_budget, prompt_texts, remaining)

        rec.enter(fr.CALLING, estimate=round(estimate, 6))
        completion = await self.gateway.complete(ANSWER_SYSTEM_PROMPT, user_prompt, history)

        rec.enter(fr.PERSISTING, latency_ms=round(completion.latency_ms))
        await self._persist(user_id, conversation_id, question, completion.text)
        rec.enter(fr.DONE)
        return {"answer": completion.text, "conversationId": conversation_id}

    async def _load_conversation(self, user_id: str, conversation_id: str, question: str):
        existing = await asyncio.to_thread(self.store.get_conversation, user_id, conversation_id)
        title = existing.title if existing else await self._make_title(question)
        return await asyncio.to_thread(
            self.store.get_or_create,
            user_id,
            conversation_id,
            title,
            self.settings.conversation_ttl_hours,
        )

    async def _make_title(self, question: str) -> str:
        fallback = fallback_title(question)
        if not self.settings.generate_titles:
            return fallback
        try:
            completion = await self.gateway.complete(
                TITLE_SYSTEM_PROMPT, f"Cau hoi dau tien: {question}", history=[], max_tokens=32
            )
        except (ModelUnavailable, BudgetExhausted):
            logger.warning("Title generation failed, using the question")
            return fallback
        return normalize_title(completion.text) or fallback

    async def _resolve_selection(self, conversation, question: str) -> tuple[str, str | None]:
        """
        If the last answer asked the user to pick a candidate and this reply
        picks one, rewrite the original question around the chosen code.
        """
        pending = conversation.pending_selection
        if pending is None:
            return question, None
        option = pick_option(question, pending.options)
        if option is None or not option.code:
            return question, None
        await asyncio.to_thread(
            self.store.set_pending_selection, conversation.user_id, conversation.conversation_id, None
        )
        logger.info("Selection %d resolved to code %s", option.index, option.code)
        return f"mã mặt hàng {option.code} {pending.question}", pending.domain

    async def _ask_to_choose(
        self,
        user_id: str,
        conversation_id: str,
        domain: str,
        question: str,
        fact: dict,
    ) -> str:
        options = [
            SelectionOption(index=i, code=c.get("code") or "", name=c.get("name") or "")
            for i, c in enumerate(fact["candidates"], start=1)
        ]
        await asyncio.to_thread(
            self.store.set_pending_selection,
            user_id,
            conversation_id,
            PendingSelection(domain=domain, question=question, options=options),
        )
        return selection_message(options)

    async def _persist(self, user_id: str, conversation_id: str, question: str, answer: str):
        ok = await asyncio.to_thread(
            self.store.append_messages,
            user_id,
            conversation_id,
            [Message("user", question), Message("assistant", answer)],
            self.settings.conversation_ttl_hours,
        )
        if not ok:
            logger.warning("Conversation %s vanished before the answer was saved", conversation_id)

    # ── Usage ────────────────────────────────────────────────────────────────

    async def get_daily_usage(self, user_id: str) -> dict:
        user_id = _require(user_id, "User is required")
        return await asyncio.to_thread(self.guard.get_daily_usage, user_id)

    async def get_monthly_usage(self) -> dict:
        return await asyncio.to_thread(self.guard.get_monthly_usage)

    # ── Conversations ────────────────────────────────────────────────────────

    async def list_conversations(self, user_id: str, limit: int | None = 20) -> list[dict]:
        user_id = _require(user_id, "User is required")
        return await asyncio.to_thread(self.store.list_conversations, user_id, _clamp(limit))

    async def get_conversation_history(
        self,
        user_id: str,
        conversation_id: str,
        limit: int | None = 20,
        cursor: int | None = None,
    ) -> dict:
        user_id = _require(user_id, "User is required")
        conversation_id = _require(conversation_id, "ConversationId is required")
        if cursor is not None:
            try:
                cursor = int(cursor)
            except (TypeError, ValueError):
                raise InvalidInput("cursor must be an integer")
            if cursor < 0:
                raise InvalidInput("cursor must not be negative")
        page = await asyncio.to_thread(
            self.store.get_history, user_id, conversation_id, _clamp(limit), cursor
        )
        if page is None:
            raise NotFound()
        return page

    async def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        user_id = _require(user_id, "User is required")
        conversation_id = _require(conversation_id, "ConversationId is required")
        if not await asyncio.to_thread(self.store.delete_conversation, user_id, conversation_id):
            raise NotFound()

    async def clear_conversation_history(self, user_id: str, conversation_id: str) -> None:
        user_id = _require(user_id, "User is required")
        conversation_id = _require(conversation_id, "ConversationId is required")
        cleared = await asyncio.to_thread(
            self.store.clear_conversation,
            user_id,
            conversation_id,
            self.settings.conversation_ttl_hours,
        )
        if not cleared:
            raise NotFound()

    async def update_conversation_title(self, user_id: str, conversation_id: str, title: str) -> dict:
        user_id = _require(user_id, "User is required")
        conversation_id = _require(conversation_id, "ConversationId is required")
        title = _require(title, "Title is required")[:TITLE_MAX_CHARS].strip()
        if not await asyncio.to_thread(self.store.update_title, user_id, conversation_id, title):
            raise NotFound()
        return {"conversationId": conversation_id, "title": title}

    async def sweep_expired(self) -> int:
        return await asyncio.to_thread(self.store.sweep_expired)

    # ── Feedback ─────────────────────────────────────────────────────────────

    async def create_feedback(self, user_id: str, payload: dict) -> dict:
        user_id = _require(user_id, "User is required")
        payload = payload or {}
        conversation_id = _require(payload.get("conversationId"), "ConversationId is required")
        description = _require(payload.get("description"), "Description is required")
        rating = payload.get("rating")
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                raise InvalidInput("Rating must be an integer from 1 to 5")

        conv = await asyncio.to_thread(self.store.get_conversation, user_id, conversation_id)
        if conv is None:
            raise NotFound()

        fb = Feedback(
            user_id=user_id,
            conversation_id=conversation_id,
            description=description,
            expected=_optional(payload.get("expected")),
            actual=_optional(payload.get("actual")),
            rating=rating,
        )
        await asyncio.to_thread(self.store.add_feedback, fb)
        logger.info("Feedback %s stored for conversation %s", fb.feedback_id, conversation_id)
        return {"feedbackId": fb.feedback_id, "conversationId": conversation_id, "createdAt": fb.created_at}

    async def list_feedback(
        self,
        user_id: str,
        conversation_id: str | None = None,
        limit: int | None = 20,
    ) -> list[dict]:
        user_id = _require(user_id, "User is required")
        conversation_id = (conversation_id or "").strip() or None
        rows = await asyncio.to_thread(self.store.list_feedback, user_id, conversation_id, _clamp(limit))
        return [fb.to_dict() for fb in rows]
