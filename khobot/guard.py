"""
Budget & rate guard.

Two independent limits protect the model budget:
  - a per-user daily question quota, counted before the model is called
    (a failed call still uses up the question), and
  - a global monthly cost ceiling, checked against a worst-case estimate
    before every model call, classifier and title calls included, and
    charged with the provider's real usage after it.

Both counters live in SQLite and are bumped with single upsert statements.
The pre-call check and the post-call charge are separate statements, so two
concurrent calls can both pass against the same remaining budget; overspend
is bounded by the estimates of the calls in flight.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from khobot.config import AISettings
from khobot.costs import Pricing, TokenUsage, estimate_call_cost, usage_cost
from khobot.errors import BudgetExhausted, QuotaExceeded
from khobot.storage.models import utcnow
from khobot.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class BudgetGuard:
    """Daily quota + monthly ceiling, backed by atomic SQLite counters."""

    def __init__(
        self,
        store: SQLiteStore,
        settings: AISettings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.pricing = Pricing.from_settings(settings)
        self._now = clock or utcnow

    # Keys are UTC calendar days / months.

    def date_key(self) -> str:
        return self._now().strftime("%Y-%m-%d")

    def period_key(self) -> str:
        return self._now().strftime("%Y-%m")

    # ── Daily quota ──────────────────────────────────────────────────────────

    def assert_daily_limit(self, user_id: str) -> int:
        """Count one question for today or raise QuotaExceeded. Returns the new count."""
        limit = self.settings.daily_question_limit
        count = self.store.try_increment_daily(user_id, self.date_key(), limit)
        if count is None:
            logger.info("Daily quota reached for user %s (limit=%d)", user_id, limit)
            raise QuotaExceeded()
        return count

    def get_daily_usage(self, user_id: str) -> dict:
        date_key = self.date_key()
        limit = self.settings.daily_question_limit
        count = self.store.get_daily_count(user_id, date_key)
        return {
            "date": date_key,
            "count": count,
            "limit": limit,
            "remaining": max(limit - count, 0),
        }

    # ── Monthly budget ───────────────────────────────────────────────────────

    def ensure_monthly_budget(self) -> float:
        """Remaining budget for this month; BudgetExhausted when nothing is left."""
        row = self.store.ensure_month(self.period_key())
        remaining = self.settings.monthly_budget_usd - row["total_cost"]
        if remaining <= 0:
            logger.warning(
                "Monthly AI budget exhausted (%s: spent %.4f of %.2f)",
                self.period_key(), row["total_cost"], self.settings.monthly_budget_usd,
            )
            raise BudgetExhausted()
        return remaining

    def check_call_budget(
        self,
        prompt_texts: list[str],
        remaining: float,
        max_output_tokens: int | None = None,
    ) -> float:
        """
        Reject a call whose worst case (all prompt text at input price, the
        whole output allowance at output price) does not fit the remaining budget.
        """
        if max_output_tokens is None:
            max_output_tokens = self.settings.max_output_tokens
        in_tok, out_tok, estimate = estimate_call_cost(prompt_texts, self.pricing, max_output_tokens)
        logger.debug(
            "Call estimate: in=%d out=%d cost=%.6f remaining=%.6f",
            in_tok, out_tok, estimate, remaining,
        )
        if estimate > remaining:
            raise BudgetExhausted("AI budget too low for this request")
        return estimate

    def precheck_call(self, prompt_texts: list[str], max_output_tokens: int) -> float:
        """Gateway hook: reload the remaining budget and check one call against it."""
        return self.check_call_budget(prompt_texts, self.ensure_monthly_budget(), max_output_tokens)

    def record_usage(self, usage: TokenUsage) -> float:
        """Charge the month with a call's reported usage. Returns its cost."""
        cost = usage_cost(usage, self.pricing)
        self.store.add_month_usage(self.period_key(), usage.input_tokens, usage.output_tokens, cost)
        logger.info(
            "Usage recorded: in=%d out=%d cost=%.6f",
            usage.input_tokens, usage.output_tokens, cost,
        )
        return cost

    def get_monthly_usage(self) -> dict:
        row = self.store.ensure_month(self.period_key())
        budget = self.settings.monthly_budget_usd
        return {
            "period": row["period_key"],
            "input_tokens": row["input_tokens"],
            "output_tokens": row["output_tokens"],
            "total_cost": round(row["total_cost"], 6),
            "budget": budget,
            "remaining": round(max(budget - row["total_cost"], 0.0), 6),
        }
