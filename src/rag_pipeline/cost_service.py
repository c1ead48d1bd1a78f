"""Cost accounting: pricing, the per-creator usage ledger and budgets.

Every provider call reports token counts here. Counts are converted to
dollars and added to the creator's ledger row for the current UTC day. The
ledger only ever grows, and increments are additive so concurrent sessions
of one creator never lose updates.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Protocol

from supabase import Client

from src.utils.logging import get_logger

from .errors import BudgetExceededError
from .schemas import UsageRecord

logger = get_logger(__name__)

# USD per million tokens
EMBEDDING_PRICES_PER_MILLION: dict[str, float] = {
    "text-embedding-3-small": 0.02,
    "text-embedding-3-large": 0.13,
    "text-embedding-ada-002": 0.10,
}

# USD per million tokens as (input, output)
GENERATION_PRICES_PER_MILLION: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "claude-3-5-haiku-20241022": (1.00, 5.00),
    "claude-3-5-sonnet-20241022": (3.00, 15.00),
}

DEFAULT_GENERATION_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PricingTable:
    """Per-model token prices with optional overrides.

    Unknown models fall back to the default model's price so that cost is
    never silently recorded as zero.
    """

    def __init__(
        self,
        embedding_prices: dict[str, float] | None = None,
        generation_prices: dict[str, tuple[float, float]] | None = None,
    ):
        self.embedding_prices = {**EMBEDDING_PRICES_PER_MILLION, **(embedding_prices or {})}
        self.generation_prices = {
            **GENERATION_PRICES_PER_MILLION,
            **(generation_prices or {}),
        }

    def embedding_cost(self, model: str, tokens: int) -> float:
        price = self.embedding_prices.get(model)
        if price is None:
            logger.warning("unknown_embedding_model_price", model=model)
            price = self.embedding_prices[DEFAULT_EMBEDDING_MODEL]
        return tokens * price / 1_000_000

    def generation_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        prices = self.generation_prices.get(model)
        if prices is None:
            logger.warning("unknown_generation_model_price", model=model)
            prices = self.generation_prices[DEFAULT_GENERATION_MODEL]
        input_price, output_price = prices
        return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


class UsageLedger(Protocol):
    """Append-only per creator per day usage counters."""

    async def increment(
        self,
        creator_id: str,
        day: date,
        embedding_tokens: int = 0,
        generation_tokens: int = 0,
        cost: float = 0.0,
    ) -> None: ...

    async def get_day(self, creator_id: str, day: date) -> UsageRecord: ...

    async def get_cost_between(self, creator_id: str, start: date, end: date) -> float: ...


class InMemoryUsageLedger:
    """Ledger held in process memory, for tests and single-process runs."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, date], UsageRecord] = {}
        self._lock = asyncio.Lock()

    async def increment(
        self,
        creator_id: str,
        day: date,
        embedding_tokens: int = 0,
        generation_tokens: int = 0,
        cost: float = 0.0,
    ) -> None:
        if embedding_tokens < 0 or generation_tokens < 0 or cost < 0:
            raise ValueError("usage increments must be non-negative")
        async with self._lock:
            row = self._rows.setdefault(
                (creator_id, day), UsageRecord(creator_id=creator_id, day=day)
            )
            row.embedding_tokens += embedding_tokens
            row.generation_tokens += generation_tokens
            row.cost += cost

    async def get_day(self, creator_id: str, day: date) -> UsageRecord:
        row = self._rows.get((creator_id, day))
        if row is None:
            return UsageRecord(creator_id=creator_id, day=day)
        return row.model_copy()

    async def get_cost_between(self, creator_id: str, start: date, end: date) -> float:
        return sum(
            row.cost
            for (owner, day), row in self._rows.items()
            if owner == creator_id and start <= day <= end
        )


class SupabaseUsageLedger:
    """Ledger stored in the ``usage_ledger`` table.

    Increments go through the ``increment_usage_ledger`` RPC, which performs
    ``insert ... on conflict do update set x = x + excluded.x`` in a single
    statement.
    """

    def __init__(self, client: Client):
        self.client = client

    async def increment(
        self,
        creator_id: str,
        day: date,
        embedding_tokens: int = 0,
        generation_tokens: int = 0,
        cost: float = 0.0,
    ) -> None:
        if embedding_tokens < 0 or generation_tokens < 0 or cost < 0:
            raise ValueError("usage increments must be non-negative")
        try:
            query = self.client.rpc(
                "increment_usage_ledger",
                {
                    "p_creator_id": creator_id,
                    "p_day": day.isoformat(),
                    "p_embedding_tokens": embedding_tokens,
                    "p_generation_tokens": generation_tokens,
                    "p_cost": cost,
                },
            )
            await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.exception(
                "usage_increment_failed",
                creator_id=creator_id,
                error_type=type(e).__name__,
            )
            raise

    async def get_day(self, creator_id: str, day: date) -> UsageRecord:
        query = (
            self.client.table("usage_ledger")
            .select("creator_id, day, embedding_tokens, generation_tokens, cost")
            .eq("creator_id", creator_id)
            .eq("day", day.isoformat())
        )
        response = await asyncio.to_thread(query.execute)
        if not response.data:
            return UsageRecord(creator_id=creator_id, day=day)
        return UsageRecord(**response.data[0])

    async def get_cost_between(self, creator_id: str, start: date, end: date) -> float:
        query = (
            self.client.table("usage_ledger")
            .select("cost")
            .eq("creator_id", creator_id)
            .gte("day", start.isoformat())
            .lte("day", end.isoformat())
        )
        response = await asyncio.to_thread(query.execute)
        return float(sum(row["cost"] for row in response.data or []))


class CostTracker:
    """Converts token usage to dollars, records it and enforces budgets."""

    def __init__(
        self,
        ledger: UsageLedger,
        pricing: PricingTable | None = None,
        daily_budget_usd: float | None = None,
        monthly_budget_usd: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.pricing = pricing or PricingTable()
        self.daily_budget_usd = daily_budget_usd
        self.monthly_budget_usd = monthly_budget_usd
        self.clock = clock

    def today(self) -> date:
        return self.clock().astimezone(UTC).date()

    async def ensure_within_budget(self, creator_id: str) -> None:
        """Reject the next provider call when a budget is already spent.

        Raises:
            BudgetExceededError: If today's or this month's cost has reached
                the configured limit.
        """
        today = self.today()

        if self.daily_budget_usd is not None:
            spent = (await self.ledger.get_day(creator_id, today)).cost
            if spent >= self.daily_budget_usd:
                logger.warning(
                    "budget_exceeded",
                    creator_id=creator_id,
                    period="daily",
                    spent=spent,
                    limit=self.daily_budget_usd,
                )
                raise BudgetExceededError(creator_id, "daily", self.daily_budget_usd, spent)

        if self.monthly_budget_usd is not None:
            spent = await self.ledger.get_cost_between(creator_id, today.replace(day=1), today)
            if spent >= self.monthly_budget_usd:
                logger.warning(
                    "budget_exceeded",
                    creator_id=creator_id,
                    period="monthly",
                    spent=spent,
                    limit=self.monthly_budget_usd,
                )
                raise BudgetExceededError(
                    creator_id, "monthly", self.monthly_budget_usd, spent
                )

    async def record_embedding(
        self, creator_id: str, model: str, tokens: int, cost: float | None = None
    ) -> float:
        """Add embedding usage to the ledger and return its dollar cost."""
        if cost is None:
            cost = self.pricing.embedding_cost(model, tokens)
        await self.ledger.increment(
            creator_id, self.today(), embedding_tokens=tokens, cost=cost
        )
        logger.info(
            "embedding_usage_recorded",
            creator_id=creator_id,
            model=model,
            tokens=tokens,
            cost=cost,
        )
        return cost

    async def record_generation(
        self, creator_id: str, model: str, input_tokens: int, output_tokens: int
    ) -> float:
        """Add generation usage to the ledger and return its dollar cost."""
        cost = self.pricing.generation_cost(model, input_tokens, output_tokens)
        await self.ledger.increment(
            creator_id,
            self.today(),
            generation_tokens=input_tokens + output_tokens,
            cost=cost,
        )
        logger.info(
            "generation_usage_recorded",
            creator_id=creator_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
        )
        return cost
