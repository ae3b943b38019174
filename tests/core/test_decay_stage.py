"""
Tests for `core/stages/decay.py` – exponential context decay and goal expiry.

The stage takes an injectable clock, so every test pins "now" and builds
context elements with timestamps relative to it.
"""

import unittest
from datetime import datetime, timedelta, timezone

from core.stages.decay import DecayStage
from shared.models import (
    ContextElement,
    ContextType,
    ConversationGoal,
    ConversationState,
    GoalStatus,
)
from shared.utils import to_iso

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def element(key, hours_ago, weight=1.0, context_type=ContextType.TOPIC):
    accessed = NOW - timedelta(hours=hours_ago)
    return ContextElement(
        key=key, value=key, weight=weight, context_type=context_type,
        created_at=accessed, last_accessed_at=accessed,
    )


class TestDecayStage(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.stage = DecayStage(min_weight=0.1, goal_expiry_days=7, clock=lambda: NOW)

    async def test_weight_halves_after_one_half_life(self):
        state = ConversationState(conversation_id="c", context_elements=[element("sleep", 24)])
        result = await self.stage.run(state)
        self.assertAlmostEqual(result.context_elements[0].weight, 0.5)
        self.assertEqual(state.context_elements[0].weight, 1.0)

    async def test_half_life_depends_on_type(self):
        state = ConversationState(
            conversation_id="c",
            context_elements=[
                element("crisis", 72, context_type=ContextType.CRISIS),
                element("likes_tea", 168, context_type=ContextType.PREFERENCE),
            ],
        )
        result = await self.stage.run(state)
        weights = {e.key: e.weight for e in result.context_elements}
        self.assertAlmostEqual(weights["crisis"], 0.5)
        self.assertAlmostEqual(weights["likes_tea"], 0.5)

    async def test_elements_at_or_below_min_weight_are_forgotten(self):
        state = ConversationState(
            conversation_id="c",
            context_elements=[element("old", 24 * 5), element("fresh", 1)],
        )
        result = await self.stage.run(state)
        self.assertEqual([e.key for e in result.context_elements], ["fresh"])

    async def test_decay_is_measured_from_previous_run(self):
        state = ConversationState(
            conversation_id="c",
            context_elements=[element("sleep", 48, weight=0.5)],
            metadata={'last_decay_at': to_iso(NOW - timedelta(hours=24))},
        )
        result = await self.stage.run(state)
        self.assertAlmostEqual(result.context_elements[0].weight, 0.25)
        self.assertEqual(result.metadata['last_decay_at'], to_iso(NOW))

    async def test_old_active_goals_are_dropped(self):
        goals = [
            ConversationGoal(description="sleep 8h", created_at=NOW - timedelta(days=8)),
            ConversationGoal(description="walk daily", created_at=NOW - timedelta(days=2)),
            ConversationGoal(
                description="done long ago", status=GoalStatus.COMPLETED, created_at=NOW - timedelta(days=30)
            ),
        ]
        result = await self.stage.run(ConversationState(conversation_id="c", goals=goals))
        self.assertEqual([g.description for g in result.goals], ["walk daily", "done long ago"])


if __name__ == '__main__':
    unittest.main()
