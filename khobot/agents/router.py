"""
Intent router: pick the one data domain that can answer a question.

Cheap vocabulary rules run first. Movement-log questions and product
questions are recognizable from their wording alone, so they never pay for a
model round-trip. Everything else goes to a small classification call over
a closed routing table, and anything the model is unsure about resolves to
"unknown" instead of a guess.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from khobot.agents import extractor
from khobot.agents.facts import COMPOSITION, DOMAINS, INVENTORY, MOVEMENT, UNKNOWN
from khobot.errors import ModelUnavailable
from khobot.gateway import LLMGateway, parse_json_reply

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Routing schema
# ---------------------------------------------------------------------------

@dataclass
class RoutingDecision:
    domain: str = UNKNOWN
    confidence: float = 0.0
    via: str = "fallback"   # "rules" | "classifier" | "fallback"


ROUTING_TABLE: list[dict] = [
    {
        "source": INVENTORY,
        "description": "Thong tin ton kho, nhap kho, xuat kho, so luong moi thung/hop cua mat hang",
        "examples": [
            "Mat hang ABC con bao nhieu?",
            "Ma hang ABC ton kho bao nhieu?",
            "Ma mat hang ABC da nhap kho bao nhieu?",
            "Item ABC da xuat bao nhieu?",
            "So luong moi thung cua ABC la bao nhieu?",
        ],
    },
    {
        "source": COMPOSITION,
        "description": "Thong tin san pham va cac mat hang (item) cau thanh san pham",
        "examples": [
            "San pham ABC gom nhung mat hang nao?",
            "Product ABC co nhung item gi?",
            "San pham ABC co bao nhieu item?",
        ],
    },
    {
        "source": MOVEMENT,
        "description": "Lich su nhap kho, xuat kho, tra hang theo mat hang",
        "examples": [
            "Lich su nhap kho cua ma hang ABC",
            "Nhat ky xuat kho cua item ABC",
            "Mat hang nay xuat nhu nao trong ngay 23/1/2026 - 25/1/2026?",
            "Co bao nhieu item Thach kem da duoc xuat/nhap trong khoang thoi gian?",
        ],
    },
]

CLASSIFIER_SYSTEM_PROMPT = (
    "Ban la bo phan loai cau hoi. "
    "Chon dung 1 nguon du lieu tu danh sach. "
    'Neu khong chac, tra ve "unknown". '
    'Tra ve dung JSON: {"source":"...","confidence":0.0-1.0}.'
)


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class IntentRouter:
    """Rules first, then an LLM classifier gated by a minimum confidence."""

    def __init__(self, gateway: LLMGateway | None, min_confidence: float = 0.6):
        self.gateway = gateway
        self.min_confidence = min_confidence
        self._user_prompt_tail = "Danh sach nguon:\n" + json.dumps(ROUTING_TABLE, ensure_ascii=False)

    def route_by_rules(self, question: str) -> RoutingDecision | None:
        if extractor.is_movement_question(question):
            return RoutingDecision(MOVEMENT, 1.0, "rules")
        if extractor.extract_product_name(question):
            return RoutingDecision(COMPOSITION, 1.0, "rules")
        return None

    def parse_classification(self, text: str) -> RoutingDecision:
        """Turn a classifier reply into a decision; anything off resolves to unknown."""
        data = parse_json_reply(text)
        if data is None:
            logger.warning("Classifier reply is not JSON: %.120s", text)
            return RoutingDecision()
        source = str(data.get("source", "")).strip().lower()
        if source not in DOMAINS:
            return RoutingDecision()
        try:
            confidence = float(data.get("confidence", 0))
        except (TypeError, ValueError):
            confidence = 0.0
        if confidence < self.min_confidence:
            logger.info("Classifier unsure (%s @ %.2f), treating as unknown", source, confidence)
            return RoutingDecision()
        return RoutingDecision(source, min(confidence, 1.0), "classifier")

    async def route(self, question: str) -> RoutingDecision:
        decision = self.route_by_rules(question)
        if decision is not None:
            logger.info("Route: %s (rules)", decision.domain)
            return decision

        if self.gateway is None:
            return RoutingDecision()

        try:
            completion = await self.gateway.complete(
                CLASSIFIER_SYSTEM_PROMPT,
                f"Cau hoi: {question}\n{self._user_prompt_tail}",
                history=[],
                max_tokens=64,
                temperature=0.0,
            )
        except ModelUnavailable:
            logger.warning("Classifier unavailable, routing to unknown")
            return RoutingDecision()

        decision = self.parse_classification(completion.text)
        logger.info("Route: %s @ %.2f (%s)", decision.domain, decision.confidence, decision.via)
        return decision
