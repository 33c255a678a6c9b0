"""Per-model token and cost bookkeeping."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from .models import ModelPricing, UsageRecord
from .storage import MODEL_USAGE_KEY, KeyValueStore

logger = logging.getLogger(__name__)

PER_MILLION = 1_000_000


@dataclass
class UsageTotals:
    tokens: int = 0
    cost: float = 0.0


class UsageAccountant:
    """Maintain cumulative usage records keyed by model id.

    Records are additive: replaying the same ``record`` call counts it twice.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def records(self) -> List[UsageRecord]:
        raw = self.store.get(MODEL_USAGE_KEY) or []
        try:
            return [UsageRecord.from_dict(item) for item in raw]
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception("Error loading model usage; starting from an empty table")
            return []

    def get(self, model_id: str) -> Optional[UsageRecord]:
        return next((record for record in self.records() if record.model_id == model_id), None)

    def record(
        self,
        model_id: str,
        total_tokens: int,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        pricing: Optional[ModelPricing] = None,
    ) -> UsageRecord:
        """Add one completed request to ``model_id``'s record, creating it if needed."""
        if not model_id:
            raise ValueError("model_id is required")

        records = self.records()
        record = next((item for item in records if item.model_id == model_id), None)
        if record is None:
            record = UsageRecord(model_id=model_id)
            records.append(record)

        record.request_count += 1
        record.total_tokens += total_tokens
        record.total_prompt_tokens += prompt_tokens or 0
        record.total_completion_tokens += completion_tokens or 0
        record.last_used = time.time()
        if pricing is not None:
            record.pricing = pricing

        self.store.set(MODEL_USAGE_KEY, [item.to_dict() for item in records])
        logger.debug(
            "Recorded %d token(s) for %s (%d request(s) total)", total_tokens, model_id, record.request_count
        )
        return record

    @staticmethod
    def request_cost(prompt_tokens: int, completion_tokens: int, pricing: Optional[ModelPricing]) -> float:
        if pricing is None:
            return 0.0
        return prompt_tokens / PER_MILLION * pricing.prompt + completion_tokens / PER_MILLION * pricing.completion

    @classmethod
    def cost(cls, record: UsageRecord) -> float:
        """Cost of a record using only that record's own pricing; 0.0 if unknown."""
        if record.pricing is None:
            return 0.0
        if record.total_prompt_tokens > 0 or record.total_completion_tokens > 0:
            return cls.request_cost(record.total_prompt_tokens, record.total_completion_tokens, record.pricing)
        # Records written before the prompt/completion split was tracked.
        average_rate = (record.pricing.prompt + record.pricing.completion) / 2
        return record.total_tokens / PER_MILLION * average_rate

    def totals(self) -> UsageTotals:
        totals = UsageTotals()
        for record in self.records():
            totals.tokens += record.total_tokens
            totals.cost += self.cost(record)
        return totals
