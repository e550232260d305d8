"""Running context-token counter against the collaborator's context window."""
from __future__ import annotations

import logging
from typing import Optional

from config import settings
from storyloop.engine.aggregate import AggregateState

logger = logging.getLogger(__name__)


def record_usage(aggregate: AggregateState, tokens_this_turn: int) -> AggregateState:
    """Add *tokens_this_turn* to ``context_tokens_used``. Never subtracts."""
    tokens = max(0, int(tokens_this_turn or 0))
    if tokens != tokens_this_turn:
        logger.debug("Ignoring negative/invalid token report %r", tokens_this_turn)
    updated = aggregate.model_copy(
        update={"context_tokens_used": aggregate.context_tokens_used + tokens},
        deep=True,
    )
    ratio = utilization(updated)
    if ratio >= settings.CONTEXT_WARN_RATIO:
        logger.warning(
            "Context window %.0f%% used (%d / %d tokens)",
            ratio * 100, updated.context_tokens_used, settings.CONTEXT_TOKEN_CEILING,
        )
    return updated


def utilization(aggregate: AggregateState, ceiling: Optional[int] = None) -> float:
    """Fraction of the context window consumed so far (may exceed 1.0)."""
    ceiling = ceiling or settings.CONTEXT_TOKEN_CEILING
    return aggregate.context_tokens_used / ceiling

