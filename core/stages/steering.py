"""
core/stages/steering.py

Steering stage: asks every applicable steering strategy for hints and merges
them into a single `SteeringHints` on the state.

Merge algorithm (see `merge_hint_sets`):
1. Hint sets are ordered by priority, highest first. Ties keep strategy order.
2. Only the top `max_hint_sets` sets contribute.
3. Suggestions are concatenated in that order, deduplicated case-insensitively
   after trimming (first form wins) and truncated to `max_suggestions`.
4. Context mappings are merged; on key collisions the configured policy
   decides which value survives.
5. `type` is "merged" when more than one set contributed, otherwise the
   contributor's own type. `priority` is the top contributor's priority.

Strategies run concurrently and are isolated from each other: a strategy whose
`should_apply` or `generate_hints` raises is logged and skipped, and the
remaining strategies' hints are still merged.
"""

import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Sequence, Tuple

from core.plugins import BaseSteeringStrategy
from core.registries import SteeringRegistry
from core.stages.base import BaseStage
from monitoring.metrics import STEERING_STRATEGY_FAILURES
from shared.errors import ConfigurationError
from shared.models import ConversationState, SteeringHints
from shared.utils import dedupe_suggestions

HIGHEST_PRIORITY_WINS = "highest_priority_wins"
LOWEST_PRIORITY_WINS = "lowest_priority_wins"
CONTEXT_MERGE_POLICIES = (HIGHEST_PRIORITY_WINS, LOWEST_PRIORITY_WINS)

MERGED_HINT_TYPE = "merged"


def merge_hint_sets(
    hint_sets: Sequence[SteeringHints],
    max_hint_sets: int = 3,
    max_suggestions: int = 3,
    context_merge_policy: str = HIGHEST_PRIORITY_WINS,
) -> SteeringHints:
    """
    Merge several hint sets into one.

    Args:
        hint_sets: Non-empty sequence of hint sets from successful strategies.
        max_hint_sets: How many of the highest-priority sets contribute.
        max_suggestions: Maximum number of merged suggestions.
        context_merge_policy: "highest_priority_wins" keeps the value of the
            higher-priority set on a context key collision;
            "lowest_priority_wins" lets later (lower-priority) sets overwrite.

    Returns:
        SteeringHints: The merged hints.

    Raises:
        ValueError: If `hint_sets` is empty.
        ConfigurationError: If the merge policy is unknown.
    """
    if not hint_sets:
        raise ValueError("merge_hint_sets requires at least one hint set")
    if context_merge_policy not in CONTEXT_MERGE_POLICIES:
        raise ConfigurationError(f"Unknown context merge policy: {context_merge_policy}")

    # sorted() is stable, so equal priorities keep their incoming order
    ordered = sorted(hint_sets, key=lambda hints: hints.priority, reverse=True)
    top = ordered[:max_hint_sets]

    suggestions = dedupe_suggestions(
        (suggestion for hints in top for suggestion in hints.suggestions),
        limit=max_suggestions,
    )

    context: Dict[str, Any] = {}
    for hints in top:
        for key, value in hints.context.items():
            if context_merge_policy == HIGHEST_PRIORITY_WINS and key in context:
                continue
            context[key] = value

    return SteeringHints(
        type=MERGED_HINT_TYPE if len(top) > 1 else top[0].type,
        suggestions=suggestions,
        context=context,
        priority=top[0].priority,
    )


class SteeringStage(BaseStage):
    """Pipeline stage that fans out to steering strategies and merges their hints."""

    name = "steering"
    fail_open = True

    def __init__(
        self,
        registry: SteeringRegistry,
        max_hint_sets: int = 3,
        max_suggestions: int = 3,
        context_merge_policy: str = HIGHEST_PRIORITY_WINS,
    ):
        super().__init__()
        if context_merge_policy not in CONTEXT_MERGE_POLICIES:
            raise ConfigurationError(f"Unknown context merge policy: {context_merge_policy}")
        self.registry = registry
        self.max_hint_sets = max_hint_sets
        self.max_suggestions = max_suggestions
        self.context_merge_policy = context_merge_policy

    def _applicable(self, state: ConversationState) -> List[BaseSteeringStrategy]:
        applicable = []
        for strategy in self.registry.get_all_strategies():
            try:
                if strategy.should_apply(state):
                    applicable.append(strategy)
            except Exception as e:
                STEERING_STRATEGY_FAILURES.labels(strategy_id=strategy.strategy_id).inc()
                self.logger.warning(
                    f"[{self.name}] should_apply failed for {strategy.strategy_id}, skipping: {e}",
                    extra={'strategy_id': strategy.strategy_id, 'conversation_id': state.conversation_id},
                    exc_info=True
                )
        return applicable

    async def _collect(
        self, strategies: List[BaseSteeringStrategy], state: ConversationState
    ) -> Tuple[List[Tuple[BaseSteeringStrategy, SteeringHints]], List[str]]:
        results = await asyncio.gather(
            *(strategy.generate_hints(state) for strategy in strategies),
            return_exceptions=True,
        )

        succeeded = []
        failed = []
        for strategy, result in zip(strategies, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                STEERING_STRATEGY_FAILURES.labels(strategy_id=strategy.strategy_id).inc()
                self.logger.warning(
                    f"[{self.name}] Strategy {strategy.strategy_id} failed: {result}",
                    extra={'strategy_id': strategy.strategy_id, 'conversation_id': state.conversation_id},
                    exc_info=result
                )
                failed.append(strategy.strategy_id)
            else:
                succeeded.append((strategy, result))
        return succeeded, failed

    async def process(self, state: ConversationState) -> ConversationState:
        if len(self.registry) == 0:
            return state

        applicable = self._applicable(state)
        if not applicable:
            return state

        succeeded, failed = await self._collect(applicable, state)
        if not succeeded:
            self.logger.warning(
                f"[{self.name}] All {len(failed)} applicable strategies failed",
                extra={'conversation_id': state.conversation_id}
            )
            return state

        merged = merge_hint_sets(
            [hints for _, hints in succeeded],
            max_hint_sets=self.max_hint_sets,
            max_suggestions=self.max_suggestions,
            context_merge_policy=self.context_merge_policy,
        )

        metadata = dict(state.metadata)
        metadata['steering_applied'] = [strategy.strategy_id for strategy, _ in succeeded]
        metadata['steering_failed'] = failed

        self.logger.info(
            f"[{self.name}] Merged hints from {len(succeeded)} strategies",
            extra={
                'conversation_id': state.conversation_id,
                'extra_fields': {'suggestions': len(merged.suggestions), 'hint_type': merged.type}
            }
        )
        return replace(state, steering_hints=merged, metadata=metadata)
