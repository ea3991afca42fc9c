"""
Tests for the intent router: vocabulary rules, then the LLM classifier.
"""

import pytest

from khobot.agents.router import IntentRouter, RoutingDecision
from khobot.backends.base import BackendResponse
from khobot.gateway import LLMGateway


@pytest.fixture
def router(backend):
    return IntentRouter(LLMGateway(backend, model="gpt-test"), min_confidence=0.6)


@pytest.mark.asyncio
async def test_movement_vocabulary_skips_classifier(router, backend):
    decision = await router.route("lịch sử nhập kho")
    assert decision == RoutingDecision("movement", 1.0, "rules")
    assert backend.calls == []


@pytest.mark.asyncio
async def test_product_question_routes_by_rules(router, backend):
    decision = await router.route("San pham Combo A gom nhung item nao?")
    assert decision.domain == "composition"
    assert decision.via == "rules"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_classifier_decides_the_rest(router, backend):
    backend.queue('{"source": "inventory", "confidence": 0.92}')
    decision = await router.route("Ma hang ABC123 ton kho bao nhieu?")
    assert decision.domain == "inventory"
    assert decision.via == "classifier"
    assert decision.confidence == pytest.approx(0.92)

    body = backend.calls[0]
    assert body["temperature"] == 0.0
    assert body["max_tokens"] == 64
    assert [m["role"] for m in body["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_classifier_json_inside_prose(router, backend):
    backend.queue('Ket qua: {"source": "inventory", "confidence": 0.8} nhe')
    decision = await router.route("ABC123 con bao nhieu?")
    assert decision.domain == "inventory"


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [
    '{"source": "inventory", "confidence": 0.3}',
    '{"source": "weather", "confidence": 0.99}',
    "toi khong biet",
    '{"source": "inventory", "confidence": "cao"}',
])
async def test_unsure_or_invalid_classifier_is_unknown(router, backend, reply):
    backend.queue(reply)
    decision = await router.route("xin chao")
    assert decision == RoutingDecision()
    assert decision.domain == "unknown"
    assert decision.confidence == 0.0


@pytest.mark.asyncio
async def test_classifier_failure_is_unknown(router, backend):
    backend.queue(BackendResponse(ok=False, status_code=500, error="boom"))
    decision = await router.route("xin chao")
    assert decision.domain == "unknown"


def test_parse_classification_clamps_confidence(router):
    decision = router.parse_classification('{"source": "movement", "confidence": 4}')
    assert decision.domain == "movement"
    assert decision.confidence == 1.0
