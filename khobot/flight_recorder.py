"""
Flight recorder: per-ask state timelines.

Every ask() walks the same state machine:

  Validating → QuotaChecking → BudgetChecking → ConversationLoading → Routing
  → FactBuilding → CostEstimating → Calling → Persisting → Done

ending early in Rejected (from Validating, QuotaChecking, BudgetChecking or
CostEstimating) or Failed (from Calling). Each transition is stamped with
the elapsed time so slow stages show up in the DEBUG log and the CLI trace.

In-memory only, bounded by count and age. Nothing here is persisted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from uuid import uuid4

logger = logging.getLogger(__name__)

VALIDATING = "Validating"
QUOTA_CHECKING = "QuotaChecking"
BUDGET_CHECKING = "BudgetChecking"
CONVERSATION_LOADING = "ConversationLoading"
ROUTING = "Routing"
FACT_BUILDING = "FactBuilding"
COST_ESTIMATING = "CostEstimating"
CALLING = "Calling"
PERSISTING = "Persisting"
DONE = "Done"
REJECTED = "Rejected"
FAILED = "Failed"

TERMINAL = (DONE, REJECTED, FAILED)

# Where the terminal error states may be entered from.
REJECTABLE = (VALIDATING, QUOTA_CHECKING, BUDGET_CHECKING, COST_ESTIMATING)
FAILABLE = (CALLING,)


class FlightRecord:
    """State timeline for a single ask()."""

    __slots__ = ("id", "user_id", "conversation_id", "start_time", "events", "outcome")

    def __init__(self, user_id: str = "", conversation_id: str = ""):
        self.id: str = uuid4().hex[:12]
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.start_time: float = time.monotonic()
        self.events: list[dict] = []
        self.outcome: str = ""

    @property
    def state(self) -> str:
        return self.events[-1]["state"] if self.events else ""

    @property
    def closed(self) -> bool:
        return self.outcome != ""

    def enter(self, state: str, **details):
        """Record a transition into `state`."""
        if self.closed:
            return
        event = {
            "elapsed_ms": round((time.monotonic() - self.start_time) * 1000, 2),
            "state": state,
        }
        if details:
            event["details"] = {k: v for k, v in details.items() if v is not None}
        self.events.append(event)
        if state in TERMINAL:
            self.outcome = state

    def reject(self, reason: str):
        if self.state not in REJECTABLE:
            logger.debug("Rejected from unexpected state %s", self.state)
        self.enter(REJECTED, reason=reason)

    def fail(self, reason: str):
        if self.state not in FAILABLE:
            logger.debug("Failed from unexpected state %s", self.state)
        self.enter(FAILED, reason=reason)

    @property
    def states(self) -> list[str]:
        return [e["state"] for e in self.events]

    @property
    def total_ms(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1]["elapsed_ms"]

    def summary(self) -> dict:
        """Time spent in each state (time until the next transition)."""
        spent: dict[str, float] = {}
        for prev, nxt in zip(self.events, self.events[1:]):
            spent[prev["state"]] = round(nxt["elapsed_ms"] - prev["elapsed_ms"], 2)
        return {"total_ms": round(self.total_ms, 2), "outcome": self.outcome, "by_state": spent}

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "events": self.events,
            "summary": self.summary(),
        }

    def render_text(self) -> str:
        """Render as a human-readable timeline."""
        lines = [f"ASK {self.id} -> {self.outcome or 'open'}"]
        if self.conversation_id:
            lines.append(f"Conversation: {self.conversation_id}")
        for event in self.events:
            line = f"  [{event['elapsed_ms']:8.1f}ms] {event['state']}"
            details = event.get("details")
            if details:
                line += "  (" + ", ".join(f"{k}={v}" for k, v in details.items()) + ")"
            lines.append(line)
        lines.append(f"  TOTAL: {self.total_ms:.0f}ms")
        return "\n".join(lines)


class FlightRecorderStore:
    """Thread-safe bounded store of recent records."""

    def __init__(self, max_records: int = 500, retention_hours: float = 1):
        self.max_records = max_records
        self.retention_seconds = retention_hours * 3600
        self._records: OrderedDict[str, FlightRecord] = OrderedDict()
        self._lock = threading.Lock()

    def store(self, record: FlightRecord):
        cutoff = time.monotonic() - self.retention_seconds
        with self._lock:
            while self._records:
                oldest = next(iter(self._records.values()))
                if len(self._records) < self.max_records and oldest.start_time >= cutoff:
                    break
                self._records.popitem(last=False)
            self._records[record.id] = record

    def get(self, record_id: str) -> FlightRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def recent(self, n: int = 10) -> list[FlightRecord]:
        with self._lock:
            items = list(self._records.values())
        return items[-n:]

    @property
    def count(self) -> int:
        return len(self._records)
