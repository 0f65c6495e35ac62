"""
Cost Ledger — append-only record of every model invocation.

Each call's token counts are priced from PRICING and stored as a fixed-point
string with 6 decimals. Writes go through their own session so a ledger
failure never touches (or rolls back) the caller's extraction transaction.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.orm import Session

from database.models import ApiCostTracking

log = logging.getLogger(__name__)

# USD per 1M tokens (input, output)
PRICING = {
    "gpt-4o": (Decimal("2.50"), Decimal("10.00")),
    "gpt-4o-mini": (Decimal("0.15"), Decimal("0.60")),
    "gemini-1.5-flash-latest": (Decimal("0.075"), Decimal("0.30")),
    "gemini-2.0-flash-exp": (Decimal("0"), Decimal("0")),
}

_PER_TOKEN = Decimal(1_000_000)
_SIX_PLACES = Decimal("0.000001")


def estimate_cost(model_name: str, input_tokens: int, output_tokens: int) -> Decimal:
    """Price one call; unknown models are priced at zero."""
    price_in, price_out = PRICING.get(model_name, (Decimal("0"), Decimal("0")))
    cost = (Decimal(input_tokens) * price_in + Decimal(output_tokens) * price_out) / _PER_TOKEN
    return cost.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP)


def format_cost(cost: Decimal) -> str:
    return str(cost.quantize(_SIX_PLACES, rounding=ROUND_HALF_UP))


@dataclass
class ModelCall:
    """Usage record of one invocation, success or failure."""
    provider: str
    model_name: str
    operation_type: str
    input_tokens: int = 0
    output_tokens: int = 0
    success: bool = True
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    page_number: Optional[int] = None

    @property
    def cost(self) -> Decimal:
        return estimate_cost(self.model_name, self.input_tokens, self.output_tokens)


class CostLedger:
    """Writes ApiCostTracking rows; never raises."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def record(self, call: ModelCall, book_id: Optional[int] = None) -> None:
        db = self.session_factory()
        try:
            db.add(ApiCostTracking(
                book_id=book_id,
                api_provider=call.provider,
                model_name=call.model_name,
                operation_type=call.operation_type,
                input_tokens=call.input_tokens,
                output_tokens=call.output_tokens,
                total_tokens=call.input_tokens + call.output_tokens,
                estimated_cost_usd=format_cost(call.cost),
                page_number=call.page_number,
                success=call.success,
                error_message=(call.error_message or None) and call.error_message[:2000],
                processing_time_ms=call.processing_time_ms,
            ))
            db.commit()
        except Exception as e:
            db.rollback()
            log.warning("[CostLedger] Failed to record %s call for book %s: %s", call.operation_type, book_id, e)
        finally:
            db.close()


def get_book_total_cost(db: Session, book_id: int) -> Decimal:
    rows = db.query(ApiCostTracking.estimated_cost_usd).filter(ApiCostTracking.book_id == book_id).all()
    return sum((Decimal(r[0]) for r in rows), Decimal("0"))


def get_book_cost_summary(db: Session, book_id: int) -> dict:
    """
    Roll the ledger up for one book.

    Returns:
        {total_cost_usd, total_tokens, total_calls, successful_calls, failed_calls,
         by_provider: {provider: {calls, cost_usd, tokens}},
         by_operation: {operation: {calls, cost_usd, tokens}}}
    """
    rows = db.query(ApiCostTracking).filter(ApiCostTracking.book_id == book_id).all()

    total = Decimal("0")
    tokens = 0
    successful = 0
    by_provider: dict = {}
    by_operation: dict = {}
    for row in rows:
        cost = Decimal(row.estimated_cost_usd)
        total += cost
        tokens += row.total_tokens or 0
        if row.success:
            successful += 1
        for bucket, key in ((by_provider, row.api_provider), (by_operation, row.operation_type)):
            entry = bucket.setdefault(key, {"calls": 0, "cost_usd": Decimal("0"), "tokens": 0})
            entry["calls"] += 1
            entry["cost_usd"] += cost
            entry["tokens"] += row.total_tokens or 0

    for bucket in (by_provider, by_operation):
        for entry in bucket.values():
            entry["cost_usd"] = format_cost(entry["cost_usd"])

    return {
        "total_cost_usd": format_cost(total),
        "total_tokens": tokens,
        "total_calls": len(rows),
        "successful_calls": successful,
        "failed_calls": len(rows) - successful,
        "by_provider": by_provider,
        "by_operation": by_operation,
    }
