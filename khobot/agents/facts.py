"""
Fact assembler: turn (domain, question) into a deterministic fact payload.

Facts are plain dicts, serialized verbatim into the model prompt. Every
strategy is read-only against the catalog. A lookup that resolves nothing
is still a fact (found=False), because "not found" is an answer, not an error.

Strategies are chained per domain. A strategy returns None to hand the
question to the next one, e.g. a product question whose name matches no
product is retried as an inventory question.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import math
from datetime import datetime
from typing import Callable

from khobot.agents import extractor
from khobot.storage.catalog import Catalog, MovementQuery
from khobot.storage.models import InventoryItem, MovementEntry, StockQuantity

logger = logging.getLogger(__name__)

# Domains the router can resolve to
INVENTORY = "inventory"
COMPOSITION = "composition"
MOVEMENT = "movement"
UNKNOWN = "unknown"
DOMAINS = (INVENTORY, COMPOSITION, MOVEMENT)

MAX_CANDIDATES = 5
MAX_MOVEMENT_ITEMS = 5
MOVEMENT_SAMPLE_SIZE = 20

BOXES_FORMULA = (
    "So thung = floor(ton kho / so luong moi thung). "
    "So du le = ton kho % so luong moi thung."
)
BOXES_NOT_APPLICABLE = "quantityPerBox = 0, khong the tinh so thung"


def _n(value):
    """Render whole floats as ints so the prompt reads 42, not 42.0."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _qty(q: StockQuantity) -> dict:
    return {"quantity": _n(q.quantity), "real": _n(q.real)}


def compute_boxes(rest: float, quantity_per_box: float) -> tuple[int, float]:
    """
    Full boxes and loose remainder for a stock level.
    quantity_per_box <= 0 means the rule does not apply: (0, rest).
    """
    if quantity_per_box <= 0:
        return 0, rest
    boxes = math.floor(rest / quantity_per_box)
    return boxes, rest - boxes * quantity_per_box


def _candidates(items: list[InventoryItem]) -> list[dict]:
    return [{"code": it.code, "name": it.name} for it in items[:MAX_CANDIDATES]]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class FactStrategy(abc.ABC):
    """One way of grounding a question. Returns a fact, or None to pass."""
    name = ""

    def __init__(self, catalog: Catalog, clock: Callable[[], datetime] | None = None):
        self.catalog = catalog
        self.clock = clock

    @abc.abstractmethod
    def build(self, question: str) -> dict | None:
        ...


class InventoryFacts(FactStrategy):
    """Stock figures for one inventory item, by code or by name."""
    name = "inventory"

    def build(self, question: str) -> dict:
        lookup = extractor.extract_lookup(question)
        if lookup is None:
            if extractor.is_formula_question(question):
                return {"type": "formula", "found": True, "topic": "boxes", "explanation": BOXES_FORMULA}
            return {"type": "inventory", "found": False, "message": "Khong xac dinh duoc mat hang"}

        if lookup.kind == "code":
            item = self.catalog.find_item_by_code(lookup.value)
            if item is None:
                return {"type": "inventory", "found": False, "code": lookup.value}
        else:
            matches = self.catalog.find_items_by_name(lookup.value, MAX_CANDIDATES)
            if not matches:
                return {"type": "inventory", "found": False, "name": lookup.value}
            if len(matches) > 1:
                return {
                    "type": "inventory",
                    "found": False,
                    "name": lookup.value,
                    "candidates": _candidates(matches),
                }
            item = matches[0]

        return self._item_fact(item, extractor.extract_metric(question))

    @staticmethod
    def _item_fact(item: InventoryItem, metric: str | None) -> dict:
        rest = item.rest.quantity
        qpb = item.quantity_per_box
        boxes, remainder = compute_boxes(rest, qpb)
        metrics = {
            "quantity_per_box": _n(qpb),
            "received": _qty(item.received),
            "delivered": _qty(item.delivered),
            "rest": _qty(item.rest),
            "boxes": boxes,
            "remainder": _n(remainder),
        }
        by_metric = {
            "rest": metrics["rest"],
            "boxes": {
                "boxes": boxes,
                "remainder": _n(remainder),
                "quantity_per_box": _n(qpb),
                "rest_quantity": _n(rest),
                "explanation": BOXES_FORMULA if qpb > 0 else BOXES_NOT_APPLICABLE,
            },
            "received": metrics["received"],
            "delivered": metrics["delivered"],
            "quantity_per_box": metrics["quantity_per_box"],
        }
        return {
            "type": "inventory",
            "found": True,
            "code": item.code,
            "name": item.name,
            "metrics": metrics,
            "requested_metric": metric or "all",
            "requested_value": by_metric[metric] if metric else metrics,
        }


class CompositionFacts(FactStrategy):
    """Component list of a product. Passes when no product matches."""
    name = "composition"

    def build(self, question: str) -> dict | None:
        name = extractor.extract_product_name(question)
        if not name:
            return None
        product = self.catalog.find_composition_by_name(name)
        if product is None:
            logger.debug("No product named %r, falling through", name)
            return None
        known = self.catalog.get_items([line.item_id for line in product.items])
        items = []
        for line in product.items:
            it = known.get(line.item_id)
            items.append({
                "code": it.code if it else None,
                "name": it.name if it else None,
                "quantity": _n(line.quantity),
            })
        return {
            "type": "product",
            "found": True,
            "name": product.name,
            "item_count": len(items),
            "items": items,
        }


class MovementFacts(FactStrategy):
    """Totals and a recent sample of stock movements for one or more items."""
    name = "movement"

    def build(self, question: str) -> dict:
        resolved = self._resolve_items(question)
        query = self.build_query(question, [it.id for it in resolved.get("items", [])])
        base = {
            "type": "movement",
            "status": query.status or "all",
            "date_range": self._date_range(query),
        }
        if not resolved.get("items"):
            fact = {**base, "found": False}
            for key in ("code", "name", "candidates"):
                if resolved.get(key):
                    fact[key] = resolved[key]
            return fact

        total, total_quantity = self.catalog.movement_totals(query)
        sample = self.catalog.recent_movements(query, MOVEMENT_SAMPLE_SIZE)
        metric = extractor.extract_movement_metric(question)
        ids = set(query.item_ids)
        fact = {
            **base,
            "found": True,
            "items": [{"code": it.code, "name": it.name} for it in resolved["items"]],
            "total": total,
            "total_quantity": _n(total_quantity),
            "requested_metric": metric,
            "requested_value": total if metric == "total" else _n(total_quantity),
            "logs": [self._entry(e, ids) for e in sample],
        }
        if resolved.get("code"):
            fact["code"] = resolved["code"]
        if resolved.get("name"):
            fact["name_query"] = resolved["name"]
        return fact

    def build_query(self, question: str, item_ids: list[str]) -> MovementQuery:
        """Status and date filters detected in the question, for the given items."""
        now = self.clock() if self.clock else None
        date_range = extractor.extract_date_range(question, now=now)
        return MovementQuery(
            item_ids=item_ids,
            status=extractor.extract_movement_status(question),
            date_from=date_range[0] if date_range else None,
            date_to=date_range[1] if date_range else None,
        )

    # Item resolution: code first, then free-text name with a widening search.

    def _resolve_items(self, question: str) -> dict:
        lookup = extractor.extract_lookup(question)
        if lookup is not None and lookup.kind == "code":
            item = self.catalog.find_item_by_code(lookup.value)
            if item is not None:
                return {"code": lookup.value, "items": [item]}
            # Over-eager code capture ("hang thach"): retry as a name.
            name = extractor.extract_item_name(question)
            retried = self._search_by_name(name) if name else {}
            if retried.get("items") or retried.get("candidates"):
                return retried
            return {"code": lookup.value}
        elif lookup is not None:
            name = lookup.value
        else:
            return {}
        return self._search_by_name(name)

    def _search_by_name(self, name: str) -> dict:
        """
        Try the full name, then shorter word prefixes, until a search lands
        on 1..MAX_MOVEMENT_ITEMS items.
        """
        tokens = name.split()
        too_many: list[InventoryItem] = []
        for size in range(len(tokens), 0, -1):
            prefix = " ".join(tokens[:size])
            matches = self.catalog.find_items_by_name(prefix, MAX_MOVEMENT_ITEMS + 1)
            if 1 <= len(matches) <= MAX_MOVEMENT_ITEMS:
                logger.debug("Movement name search settled on %r (%d items)", prefix, len(matches))
                return {"name": name, "items": matches}
            if matches and not too_many:
                too_many = matches
        if too_many:
            return {"name": name, "candidates": _candidates(too_many)}
        return {"name": name}

    @staticmethod
    def _entry(entry: MovementEntry, ids: set[str]) -> dict:
        return {
            "status": entry.status,
            "date": entry.date,
            "note": entry.note,
            "tag": entry.tag,
            "quantity": _n(sum(line.quantity for line in entry.lines() if line.item_id in ids)),
        }

    @staticmethod
    def _date_range(query: MovementQuery) -> dict | None:
        if not query.date_from:
            return None
        return {"from": query.date_from.isoformat(), "to": query.date_to.isoformat()}


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------

# Which strategies to try, in order, for each routed domain.
STRATEGY_CHAINS: dict[str, tuple[type[FactStrategy], ...]] = {
    INVENTORY: (InventoryFacts,),
    COMPOSITION: (CompositionFacts, InventoryFacts),
    MOVEMENT: (MovementFacts,),
}


class FactAssembler:
    """Runs the strategy chain for a domain against the read-only catalog."""

    def __init__(self, catalog: Catalog, clock: Callable[[], datetime] | None = None):
        self.catalog = catalog
        self.clock = clock

    def build_facts_sync(self, domain: str, question: str) -> dict:
        for strategy_cls in STRATEGY_CHAINS.get(domain, ()):
            strategy = strategy_cls(self.catalog, self.clock)
            fact = strategy.build(question)
            if fact is not None:
                logger.info(
                    "Facts: domain=%s strategy=%s type=%s found=%s",
                    domain, strategy.name, fact.get("type"), fact.get("found"),
                )
                return fact
        return {"type": "unknown", "found": False}

    async def build_facts(self, domain: str, question: str) -> dict:
        """Catalog calls are blocking SQLite reads, so run them off the loop."""
        return await asyncio.to_thread(self.build_facts_sync, domain, question)
