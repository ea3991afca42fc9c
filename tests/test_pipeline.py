"""
End-to-end tests for AskPipeline with a scripted model backend.
No network: every model reply comes from ScriptedBackend.
"""

import asyncio
import json
from dataclasses import replace

import pytest

from khobot import flight_recorder as fr
from khobot.backends.base import BackendResponse
from khobot.errors import (
    BudgetExhausted,
    Forbidden,
    InvalidInput,
    ModelUnavailable,
    NotFound,
    QuotaExceeded,
)
from khobot.gateway import LLMGateway
from khobot.pipeline import SELECTION_HEADER, AskPipeline, normalize_title, pick_option
from khobot.storage.models import SelectionOption

INVENTORY_ROUTE = json.dumps({"source": "inventory", "confidence": 0.9})
STOCK_QUESTION = "Ma hang ABC123 ton kho bao nhieu?"
MOVEMENT_QUESTION = "Lich su xuat kho ma hang ABC123 tu 20/11/2025 den 20/12/2025"


def _make(settings, store, catalog, backend, **overrides):
    return AskPipeline(
        replace(settings, **overrides),
        store,
        catalog,
        gateway=LLMGateway(backend, model="gpt-test"),
    )


@pytest.fixture
def pipe(settings, store, catalog, backend):
    return _make(settings, store, catalog, backend)


def _user_prompt(body):
    return body["messages"][-1]["content"]


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_grounded_answer(pipe, backend, store):
    backend.queue(INVENTORY_ROUTE, "ABC123 con 42 cai.")
    result = await pipe.ask(STOCK_QUESTION, "u1")

    assert result["answer"] == "ABC123 con 42 cai."
    cid = result["conversationId"]
    assert len(cid) == 32
    assert len(backend.calls) == 2
    prompt = _user_prompt(backend.calls[1])
    assert '"requested_metric": "rest"' in prompt
    assert '"requested_value": {"quantity": 42, "real": 0}' in prompt

    conv = store.get_conversation("u1", cid)
    assert conv.title == STOCK_QUESTION
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", STOCK_QUESTION),
        ("assistant", "ABC123 con 42 cai."),
    ]
    # classifier and answer calls are both charged
    assert (await pipe.get_monthly_usage())["input_tokens"] == 200
    assert pipe.recorder.recent(1)[0].states == [
        fr.VALIDATING, fr.QUOTA_CHECKING, fr.BUDGET_CHECKING, fr.CONVERSATION_LOADING,
        fr.ROUTING, fr.FACT_BUILDING, fr.COST_ESTIMATING, fr.CALLING, fr.PERSISTING, fr.DONE,
    ]


@pytest.mark.asyncio
async def test_movement_question_skips_classifier(pipe, backend):
    backend.queue("Da xuat 50 cai.")
    await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert len(backend.calls) == 1
    prompt = _user_prompt(backend.calls[0])
    assert '"total_quantity": 50' in prompt
    assert '"status": "delivered"' in prompt


@pytest.mark.asyncio
async def test_follow_up_sends_history(pipe, backend):
    backend.queue("Da xuat 50 cai.", "Tong 3 lan.")
    first = await pipe.ask(MOVEMENT_QUESTION, "u1")
    await pipe.ask("Lich su xuat kho ABC123 bao nhieu lan", "u1", first["conversationId"])

    messages = backend.calls[1]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == MOVEMENT_QUESTION


@pytest.mark.asyncio
async def test_unknown_domain_still_answers(pipe, backend):
    backend.queue('{"source": "unknown", "confidence": 0.2}', "Xin chao!")
    result = await pipe.ask("xin chao", "u1")
    assert result["answer"] == "Xin chao!"
    assert '"type": "unknown"' in _user_prompt(backend.calls[1])


@pytest.mark.asyncio
@pytest.mark.parametrize("question, user", [
    ("", "u1"),
    ("   ", "u1"),
    ("x" * 1001, "u1"),
    (STOCK_QUESTION, ""),
])
async def test_invalid_input(pipe, backend, store, question, user):
    with pytest.raises(InvalidInput):
        await pipe.ask(question, user)
    assert backend.calls == []
    assert store.get_daily_count("u1", pipe.guard.date_key()) == 0
    assert pipe.recorder.recent(1)[0].outcome == fr.REJECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("question, conversation_id", [
    (123, None),
    (None, None),
    (["ABC123"], None),
    (STOCK_QUESTION, 5),
    (STOCK_QUESTION, {"id": "c1"}),
])
async def test_non_string_fields_are_invalid_input(pipe, backend, store, question, conversation_id):
    with pytest.raises(InvalidInput):
        await pipe.ask(question, "u1", conversation_id)
    assert backend.calls == []
    assert store.get_daily_count("u1", pipe.guard.date_key()) == 0
    assert pipe.recorder.recent(1)[0].outcome == fr.REJECTED


@pytest.mark.asyncio
async def test_other_users_conversation_is_forbidden(pipe, backend):
    backend.queue("Da xuat 50 cai.")
    await pipe.ask(MOVEMENT_QUESTION, "u1", "shared")
    with pytest.raises(Forbidden):
        await pipe.ask(MOVEMENT_QUESTION, "u2", "shared")
    assert len(backend.calls) == 1


# ---------------------------------------------------------------------------
# Quota and budget
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_daily_quota_blocks_before_model(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, daily_question_limit=2)
    await pipe.ask(MOVEMENT_QUESTION, "u1")
    await pipe.ask(MOVEMENT_QUESTION, "u1")
    with pytest.raises(QuotaExceeded):
        await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert len(backend.calls) == 2
    assert await pipe.get_daily_usage("u1") == {
        "date": pipe.guard.date_key(), "count": 2, "limit": 2, "remaining": 0,
    }


@pytest.mark.asyncio
async def test_exhausted_month_blocks_before_model(pipe, backend, store):
    store.add_month_usage(pipe.guard.period_key(), 0, 0, 10.0)
    with pytest.raises(BudgetExhausted):
        await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert backend.calls == []


@pytest.mark.asyncio
async def test_estimate_larger_than_remaining_budget(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, monthly_budget_usd=0.0001)
    with pytest.raises(BudgetExhausted):
        await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert backend.calls == []
    assert pipe.recorder.recent(1)[0].states[-2] == fr.COST_ESTIMATING


@pytest.mark.asyncio
async def test_classifier_call_is_budget_checked(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, monthly_budget_usd=0.00005)
    with pytest.raises(BudgetExhausted):
        await pipe.ask(STOCK_QUESTION, "u1")
    assert backend.calls == []
    assert pipe.recorder.recent(1)[0].states[-2] == fr.ROUTING


@pytest.mark.asyncio
async def test_title_falls_back_when_budget_refuses(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, generate_titles=True)
    pipe.gateway.before_call = lambda texts, limit: _refuse_short_calls(limit)
    backend.queue("Da xuat 50 cai.")
    result = await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert len(backend.calls) == 1
    assert store.get_conversation("u1", result["conversationId"]).title == MOVEMENT_QUESTION


def _refuse_short_calls(limit):
    if limit <= 32:
        raise BudgetExhausted("AI budget too low for this request")


@pytest.mark.asyncio
async def test_concurrent_asks_respect_daily_quota(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, daily_question_limit=3)
    backend.queue(*["Da xuat 50 cai."] * 10)
    results = await asyncio.gather(
        *[pipe.ask(MOVEMENT_QUESTION, "u1") for _ in range(10)],
        return_exceptions=True,
    )
    answered = [r for r in results if isinstance(r, dict)]
    refused = [r for r in results if isinstance(r, QuotaExceeded)]
    assert len(answered) == 3
    assert len(refused) == 7
    assert len(backend.calls) == 3
    assert store.get_daily_count("u1", pipe.guard.date_key()) == 3


@pytest.mark.asyncio
async def test_model_failure_keeps_quota_spent(pipe, backend, store):
    backend.queue(BackendResponse(ok=False, status_code=502, error="bad gateway"))
    with pytest.raises(ModelUnavailable):
        await pipe.ask(MOVEMENT_QUESTION, "u1")
    assert store.get_daily_count("u1", pipe.guard.date_key()) == 1
    assert pipe.recorder.recent(1)[0].outcome == fr.FAILED


# ---------------------------------------------------------------------------
# Ambiguous names
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ambiguous_name_then_selection(pipe, backend, store):
    backend.queue(INVENTORY_ROUTE)
    first = await pipe.ask("Mặt hàng Thạch còn bao nhiêu?", "u1")
    cid = first["conversationId"]

    assert first["answer"].startswith(SELECTION_HEADER)
    assert "(mã: TK01)" in first["answer"]
    assert "(mã: TK02)" in first["answer"]
    assert len(backend.calls) == 1
    assert store.get_conversation("u1", cid).pending_selection is not None

    backend.queue("Thach kem con 7 cai.")
    second = await pipe.ask("TK02", "u1", cid)

    assert second["answer"] == "Thach kem con 7 cai."
    assert len(backend.calls) == 2
    prompt = _user_prompt(backend.calls[1])
    assert '"code": "TK02"' in prompt
    assert '"found": true' in prompt

    conv = store.get_conversation("u1", cid)
    assert conv.pending_selection is None
    assert [m.content for m in conv.messages if m.role == "user"] == ["Mặt hàng Thạch còn bao nhiêu?", "TK02"]


def test_pick_option():
    options = [SelectionOption(1, "TK01", "Thạch dừa"), SelectionOption(2, "TK02", "Thạch kem")]
    assert pick_option("2", options).code == "TK02"
    assert pick_option("chọn 1", options).code == "TK01"
    assert pick_option("kết quả số 2", options).code == "TK02"
    assert pick_option("thach kem nhe", options).code == "TK02"
    assert pick_option("tk01", options).code == "TK01"
    assert pick_option("9", options) is None
    assert pick_option("khong biet", options) is None


# ---------------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------------

def test_normalize_title():
    assert normalize_title('"Ton kho ABC123"\nthem dong') == "Ton kho ABC123"
    assert normalize_title("1. Lich su xuat") == "Lich su xuat"


@pytest.mark.asyncio
async def test_generated_title(settings, store, catalog, backend):
    pipe = _make(settings, store, catalog, backend, generate_titles=True)
    backend.queue('"Lịch sử xuất ABC123"', "Da xuat 50 cai.")
    result = await pipe.ask(MOVEMENT_QUESTION, "u1")
    conv = store.get_conversation("u1", result["conversationId"])
    assert conv.title == "Lịch sử xuất ABC123"


@pytest.mark.asyncio
async def test_long_question_title_is_truncated(pipe, backend, store):
    question = MOVEMENT_QUESTION + " " + "rat dai " * 20
    result = await pipe.ask(question, "u1")
    title = store.get_conversation("u1", result["conversationId"]).title
    assert title.endswith("...")
    assert len(title) <= 83


# ---------------------------------------------------------------------------
# Conversation operations
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_conversation_operations(pipe, backend):
    cid = (await pipe.ask(MOVEMENT_QUESTION, "u1"))["conversationId"]

    listed = await pipe.list_conversations("u1")
    assert [c["conversationId"] for c in listed] == [cid]
    assert await pipe.list_conversations("u2") == []

    page = await pipe.get_conversation_history("u1", cid, limit=1)
    assert page["total"] == 2
    assert page["nextCursor"] == 1
    assert page["messages"][0]["role"] == "assistant"

    renamed = await pipe.update_conversation_title("u1", cid, "  Xuat kho thang 12  ")
    assert renamed == {"conversationId": cid, "title": "Xuat kho thang 12"}

    await pipe.clear_conversation_history("u1", cid)
    await pipe.clear_conversation_history("u1", cid)
    assert (await pipe.get_conversation_history("u1", cid))["messages"] == []

    await pipe.delete_conversation("u1", cid)
    with pytest.raises(NotFound):
        await pipe.delete_conversation("u1", cid)
    with pytest.raises(NotFound):
        await pipe.get_conversation_history("u1", cid)


@pytest.mark.asyncio
async def test_conversation_operations_validate(pipe):
    with pytest.raises(NotFound):
        await pipe.get_conversation_history("u1", "missing")
    with pytest.raises(NotFound):
        await pipe.clear_conversation_history("u1", "missing")
    with pytest.raises(NotFound):
        await pipe.update_conversation_title("u1", "missing", "t")
    with pytest.raises(InvalidInput):
        await pipe.update_conversation_title("u1", "c1", "   ")
    with pytest.raises(InvalidInput):
        await pipe.get_conversation_history("u1", "c1", cursor=-1)
    with pytest.raises(InvalidInput):
        await pipe.list_conversations("u1", limit="many")
    with pytest.raises(InvalidInput):
        await pipe.list_conversations("")


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_feedback(pipe, backend):
    cid = (await pipe.ask(MOVEMENT_QUESTION, "u1"))["conversationId"]

    created = await pipe.create_feedback("u1", {
        "conversationId": cid,
        "description": "So lieu dung",
        "expected": "50",
        "actual": " ",
        "rating": 5,
    })
    assert created["conversationId"] == cid
    assert created["feedbackId"]

    rows = await pipe.list_feedback("u1", cid)
    assert len(rows) == 1
    assert rows[0]["rating"] == 5
    assert rows[0]["expected"] == "50"
    assert rows[0]["actual"] is None
    assert await pipe.list_feedback("u2") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"description": "thieu conversation"},
    {"conversationId": "c1"},
    {"conversationId": "c1", "description": "x", "rating": 6},
    {"conversationId": "c1", "description": "x", "rating": True},
    {"conversationId": "c1", "description": "x", "rating": "5"},
])
async def test_feedback_validation(pipe, payload):
    with pytest.raises(InvalidInput):
        await pipe.create_feedback("u1", payload)


@pytest.mark.asyncio
async def test_feedback_needs_own_conversation(pipe, backend):
    cid = (await pipe.ask(MOVEMENT_QUESTION, "u1"))["conversationId"]
    with pytest.raises(NotFound):
        await pipe.create_feedback("u2", {"conversationId": cid, "description": "x"})
