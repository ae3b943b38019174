"""
Tests for `core/stages/composition.py` – reply generation across one or more modes.

A fake generator records the system prompts it receives and returns a reply
per mode, keyed on a marker each mode's prompt template contains.
"""

import unittest

from core.composer import ResponseComposer
from core.modes import build_mode_handlers
from core.stages.composition import CompositionStage
from shared.errors import GenerationError, PipelineError
from shared.models import (
    ConversationGoal,
    ConversationMode,
    ConversationState,
    Intent,
    MultiIntentResult,
    SteeringHints,
)

PROMPTS = {
    'consult': "MODE=consult",
    'smalltalk': "MODE=smalltalk",
    'meta': "MODE=meta",
}
REPLIES = {
    'consult': "Try going to bed at the same time every night.",
    'smalltalk': "Good to hear from you!",
    'meta': "I am an assistant that can help with everyday questions.",
}


class FakeGenerator:
    def __init__(self, fail_modes=(), replies=None):
        self.fail_modes = set(fail_modes)
        self.replies = dict(REPLIES, **(replies or {}))
        self.calls = []

    async def generate(self, history, user_message, system_prompt=None, model_key="generation"):
        self.calls.append({'history': history, 'user_message': user_message, 'system_prompt': system_prompt})
        mode = system_prompt.split("\n", 1)[0].split("=", 1)[1]
        if mode in self.fail_modes:
            raise GenerationError(f"{mode} failed")
        return self.replies[mode]


def make_stage(generator, **kwargs):
    return CompositionStage(
        generator,
        ResponseComposer(transition_phrases=["Also,"]),
        build_mode_handlers(PROMPTS),
        **kwargs,
    )


def make_state(primary, *secondary, **kwargs):
    return ConversationState(
        conversation_id="c",
        messages=[
            {'role': 'user', 'content': 'earlier'},
            {'role': 'assistant', 'content': 'earlier reply'},
            {'role': 'user', 'content': 'hi! how do I sleep better?'},
        ],
        intents=MultiIntentResult(primary=primary, secondary=list(secondary)),
        **kwargs,
    )


class TestCompositionStage(unittest.IsolatedAsyncioTestCase):

    async def test_single_mode_reply(self):
        generator = FakeGenerator()
        state = make_state(Intent(ConversationMode.CONSULT, 0.9))
        result = await make_stage(generator).run(state)

        self.assertEqual(result.reply, REPLIES['consult'])
        self.assertEqual(result.mode, ConversationMode.CONSULT)
        self.assertEqual(result.metadata['modes_used'], ['consult'])
        call = generator.calls[0]
        self.assertEqual(call['user_message'], 'hi! how do I sleep better?')
        self.assertEqual(len(call['history']), 2)

    async def test_primary_first_then_secondary_with_transition(self):
        state = make_state(
            Intent(ConversationMode.CONSULT, 0.9, trigger="how do I sleep better?"),
            Intent(ConversationMode.SMALLTALK, 0.8, trigger="hi!"),
        )
        result = await make_stage(FakeGenerator()).run(state)
        self.assertEqual(result.reply, f"{REPLIES['consult']}\n\nAlso, good to hear from you!")
        self.assertEqual(result.metadata['modes_used'], ['consult', 'smalltalk'])

    async def test_low_confidence_secondary_is_ignored(self):
        generator = FakeGenerator()
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), Intent(ConversationMode.SMALLTALK, 0.6))
        result = await make_stage(generator).run(state)
        self.assertEqual(result.metadata['modes_used'], ['consult'])
        self.assertEqual(len(generator.calls), 1)

    async def test_focus_instruction_only_when_multiple_segments(self):
        generator = FakeGenerator()
        state = make_state(
            Intent(ConversationMode.CONSULT, 0.9, trigger="how do I sleep better?"),
            Intent(ConversationMode.SMALLTALK, 0.8, trigger="hi!"),
        )
        await make_stage(generator).run(state)
        self.assertTrue(all('Respond only to this part' in call['system_prompt'] for call in generator.calls))

    async def test_steering_suggestions_reach_the_prompt_except_meta(self):
        hints = SteeringHints(type="sleep", suggestions=["Ask about caffeine"], priority=0.7)
        generator = FakeGenerator()
        await make_stage(generator).run(make_state(Intent(ConversationMode.CONSULT, 0.9), steering_hints=hints))
        self.assertIn("- Ask about caffeine", generator.calls[0]['system_prompt'])

        generator = FakeGenerator()
        await make_stage(generator).run(make_state(Intent(ConversationMode.META, 0.9), steering_hints=hints))
        self.assertNotIn("Ask about caffeine", generator.calls[0]['system_prompt'])

    async def test_consult_prompt_lists_active_goals(self):
        generator = FakeGenerator()
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), goals=[ConversationGoal(description="sleep 8 hours")])
        await make_stage(generator).run(state)
        self.assertIn("- sleep 8 hours", generator.calls[0]['system_prompt'])

    async def test_failed_secondary_segment_is_dropped(self):
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), Intent(ConversationMode.SMALLTALK, 0.8))
        result = await make_stage(FakeGenerator(fail_modes=['smalltalk'])).run(state)
        self.assertEqual(result.reply, REPLIES['consult'])
        self.assertEqual(result.metadata['modes_used'], ['consult'])

    async def test_failed_primary_segment_aborts_turn(self):
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), Intent(ConversationMode.SMALLTALK, 0.8))
        with self.assertRaises(PipelineError) as ctx:
            await make_stage(FakeGenerator(fail_modes=['consult'])).run(state)
        self.assertEqual(ctx.exception.stage, "composition")
        self.assertIsInstance(ctx.exception.original, GenerationError)

    async def test_duplicate_secondary_segment_is_not_reported_as_used(self):
        generator = FakeGenerator(replies={'smalltalk': REPLIES['consult']})
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), Intent(ConversationMode.SMALLTALK, 0.8))
        result = await make_stage(generator).run(state)
        self.assertEqual(result.reply, REPLIES['consult'])
        self.assertEqual(result.metadata['modes_used'], ['consult'])
        self.assertEqual(len(generator.calls), 2)

    async def test_max_modes_per_response(self):
        generator = FakeGenerator()
        state = make_state(Intent(ConversationMode.CONSULT, 0.9), Intent(ConversationMode.SMALLTALK, 0.8))
        result = await make_stage(generator, max_modes_per_response=1).run(state)
        self.assertEqual(result.metadata['modes_used'], ['consult'])

    async def test_without_classification_uses_current_mode(self):
        generator = FakeGenerator()
        state = ConversationState(
            conversation_id="c", mode=ConversationMode.SMALLTALK, messages=[{'role': 'user', 'content': 'hey'}]
        )
        result = await make_stage(generator).run(state)
        self.assertEqual(result.reply, REPLIES['smalltalk'])


if __name__ == '__main__':
    unittest.main()
