"""
Prompt variants — weighted A/B selection of system instructions.

Each AI-sent message carries the id of the variant that produced it, so
handoff and error rates can be compared per variant.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Optional

from careloop.engine.errors import NotFoundError
from careloop.engine.models import PromptVariant
from careloop.engine.store import EngineStore

logger = logging.getLogger("engine.variants")


class PromptVariantSelector:
    def __init__(self, store: EngineStore, rng: random.Random | None = None) -> None:
        self._store = store
        self._rng = rng or random.Random()

    def select(self) -> Optional[PromptVariant]:
        """Weighted random pick among active variants; None when there are none."""
        variants = self._store.list_variants(active_only=True)
        if not variants:
            return None
        if len(variants) == 1:
            return variants[0]

        total = sum(max(v.weight, 0.0) for v in variants)
        if total <= 0:
            return variants[0]

        point = self._rng.random() * total
        for variant in variants:
            point -= max(variant.weight, 0.0)
            if point <= 0:
                logger.debug("Selected prompt variant %s (%s)", variant.id, variant.name)
                return variant
        return variants[-1]

    def _bump(self, variant_id: str | None, field: str) -> None:
        if not variant_id:
            return
        try:
            variant = self._store.get_variant(variant_id)
        except NotFoundError:
            logger.warning("Prompt variant %s vanished before %s update", variant_id, field)
            return
        setattr(variant, field, getattr(variant, field) + 1)
        self._store.save_variant(variant)

    def record_message(self, variant_id: str | None) -> None:
        self._bump(variant_id, "total_messages")

    def record_handoff(self, variant_id: str | None) -> None:
        self._bump(variant_id, "handoff_count")

    def record_error(self, variant_id: str | None) -> None:
        self._bump(variant_id, "error_count")

    def metrics(self) -> list[dict[str, Any]]:
        rows = []
        for v in self._store.list_variants():
            handled = v.total_messages + v.handoff_count
            rows.append({
                **v.model_dump(mode="json", exclude={"system_prompt"}),
                "handoff_rate": round(v.handoff_count / handled, 3) if handled else 0.0,
                "error_rate": round(v.error_count / (handled + v.error_count), 3)
                if (handled + v.error_count) else 0.0,
            })
        return rows
