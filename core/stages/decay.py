"""
core/stages/decay.py

Decay stage: ages remembered context and prunes stale goals before the rest
of the turn looks at the state.

Each context element loses weight exponentially with a half-life that
depends on its type (a crisis is remembered longer than a passing topic).
Elements whose weight drops to `min_weight` or below are forgotten. Active
goals older than `goal_expiry_days` are dropped.

Decay is measured from the later of the element's last access and the
previous decay run, recorded in `metadata['last_decay_at']`, so running the
stage on every turn does not decay the same interval twice.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from core.stages.base import BaseStage
from shared.models import ContextElement, ContextType, ConversationState, GoalStatus
from shared.utils import from_iso, to_iso, utc_now

DEFAULT_HALF_LIFE_HOURS = {
    ContextType.CRISIS: 72,
    ContextType.EMOTIONAL: 48,
    ContextType.TOPIC: 24,
    ContextType.PREFERENCE: 168,
    ContextType.GENERAL: 24,
}


class DecayStage(BaseStage):
    name = "decay"
    fail_open = True

    def __init__(
        self,
        half_life_hours: Optional[Dict[str, float]] = None,
        min_weight: float = 0.1,
        goal_expiry_days: int = 7,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__()
        self.half_life_hours = dict(DEFAULT_HALF_LIFE_HOURS)
        for type_name, hours in (half_life_hours or {}).items():
            self.half_life_hours[ContextType(type_name)] = hours
        self.min_weight = min_weight
        self.goal_expiry = timedelta(days=goal_expiry_days)
        self.clock = clock

    def decayed_weight(self, element: ContextElement, since: datetime, now: datetime) -> float:
        """Weight of `element` after decaying from `since` until `now`."""
        age_hours = max((now - since).total_seconds(), 0.0) / 3600
        half_life = self.half_life_hours[element.context_type]
        return element.weight * 0.5 ** (age_hours / half_life)

    async def process(self, state: ConversationState) -> ConversationState:
        now = self.clock()
        last_decay_at = from_iso(state.metadata.get('last_decay_at'))

        elements = []
        for element in state.context_elements:
            since = element.last_accessed_at
            if last_decay_at is not None and last_decay_at > since:
                since = last_decay_at
            weight = self.decayed_weight(element, since, now)
            if weight > self.min_weight:
                elements.append(replace(element, weight=weight))

        goals = [
            goal for goal in state.goals
            if not (goal.status == GoalStatus.ACTIVE and now - goal.created_at > self.goal_expiry)
        ]

        removed = len(state.context_elements) - len(elements)
        expired_goals = len(state.goals) - len(goals)
        if removed or expired_goals:
            self.logger.debug(
                f"[{self.name}] Forgot {removed} context elements and {expired_goals} goals",
                extra={'conversation_id': state.conversation_id}
            )

        metadata = dict(state.metadata)
        metadata['last_decay_at'] = to_iso(now)
        return replace(state, context_elements=elements, goals=goals, metadata=metadata)
