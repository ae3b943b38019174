"""
Tests for `core/stages/extraction.py` and the `LLMExtractor` contract in `core/plugins.py`.

Extractors are small stubs; domain storage is a `MagicMock` so the tests can
assert what would have been written without touching SQLite.
"""

import json
import unittest
from unittest.mock import AsyncMock, MagicMock

from pydantic import BaseModel

from core.plugins import BaseExtractor, ExtractionContext, LLMExtractor
from core.registries import DomainRegistry, ExtractorRegistry
from core.stages.extraction import ExtractionStage
from shared.models import (
    ConversationState,
    DomainCapabilities,
    DomainConfig,
    DomainDefinition,
    ExtractedData,
    SteeringConfig,
)


def make_domain(domain_id, triggers=(), threshold=None, priority=0):
    return DomainDefinition(
        id=domain_id,
        name=domain_id,
        priority=priority,
        capabilities=DomainCapabilities(extraction=True),
        config=DomainConfig(
            confidence_threshold=threshold,
            steering=SteeringConfig(triggers=list(triggers)),
        ),
    )


class StubExtractor(BaseExtractor):
    def __init__(self, domain_id, confidence=0.9, error=None):
        self.domain_id = domain_id
        self.confidence = confidence
        self.error = error
        self.contexts = []

    async def extract(self, message, context):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return ExtractedData(domain_id=self.domain_id, data={'message': message}, confidence=self.confidence)


class TestExtractionStage(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.domains = DomainRegistry()
        self.extractors = ExtractorRegistry()
        self.storage = MagicMock()
        self.stage = ExtractionStage(
            self.domains, self.extractors, storages={'health': self.storage}, default_confidence_threshold=0.5
        )
        self.state = ConversationState(
            conversation_id="conv-1",
            metadata={'user_id': 'user-1'},
            messages=[{'role': 'user', 'content': 'I slept 5 hours and spent $20'}],
        )

    async def test_accepted_extraction_is_appended_and_stored(self):
        self.domains.register(make_domain("health", triggers=["slept"]))
        self.extractors.register(StubExtractor("health"))

        result = await self.stage.run(self.state)

        self.assertEqual(len(result.extractions["health"]), 1)
        self.assertEqual(self.state.extractions, {})
        self.assertEqual(result.metadata['active_domains'], ["health"])
        self.assertEqual(result.metadata['domain_context']['health']['extraction_count'], 1)
        record = self.storage.store.call_args[0][0]
        self.assertEqual(record['user_id'], 'user-1')
        self.assertEqual(record['conversation_id'], 'conv-1')
        self.assertEqual(record['confidence'], 0.9)

    async def test_extractors_receive_agent_state_store(self):
        agent_state = MagicMock()
        stage = ExtractionStage(self.domains, self.extractors, agent_state=agent_state)
        self.domains.register(make_domain("health"))
        extractor = StubExtractor("health")
        self.extractors.register(extractor)

        await stage.run(self.state)

        self.assertIs(extractor.contexts[0].agent_state, agent_state)
        self.assertEqual(extractor.contexts[0].conversation_id, "conv-1")

    async def test_domain_without_matching_trigger_is_skipped(self):
        self.domains.register(make_domain("finance", triggers=["budget"]))
        extractor = StubExtractor("finance")
        self.extractors.register(extractor)

        result = await self.stage.run(self.state)

        self.assertIs(result, self.state)
        self.assertEqual(extractor.contexts, [])

    async def test_below_threshold_is_discarded(self):
        self.domains.register(make_domain("health", threshold=0.95))
        self.extractors.register(StubExtractor("health", confidence=0.9))
        result = await self.stage.run(self.state)
        self.assertIs(result, self.state)
        self.storage.store.assert_not_called()

    async def test_default_threshold_applies_without_domain_threshold(self):
        self.domains.register(make_domain("health"))
        self.extractors.register(StubExtractor("health", confidence=0.4))
        result = await self.stage.run(self.state)
        self.assertIs(result, self.state)

    async def test_failing_extractor_does_not_affect_other_domains(self):
        self.domains.register(make_domain("health", priority=2))
        self.domains.register(make_domain("finance", priority=1))
        self.extractors.register(StubExtractor("health", error=RuntimeError("model down")))
        self.extractors.register(StubExtractor("finance"))

        result = await self.stage.run(self.state)

        self.assertNotIn("health", result.extractions)
        self.assertEqual(len(result.extractions["finance"]), 1)

    async def test_storage_failure_keeps_extraction(self):
        self.storage.store.side_effect = RuntimeError("disk full")
        self.domains.register(make_domain("health"))
        self.extractors.register(StubExtractor("health"))
        result = await self.stage.run(self.state)
        self.assertEqual(len(result.extractions["health"]), 1)

    async def test_extractions_accumulate_across_turns(self):
        self.domains.register(make_domain("health"))
        self.extractors.register(StubExtractor("health"))
        first = await self.stage.run(self.state)
        second = await self.stage.run(first)
        self.assertEqual(len(second.extractions["health"]), 2)
        self.assertEqual(second.metadata['domain_context']['health']['extraction_count'], 2)


class SleepSchema(BaseModel):
    hours: float
    confidence: float


class SleepExtractor(LLMExtractor):
    domain_id = "health"
    schema = SleepSchema

    def build_extraction_prompt(self, message, context):
        return "Extract sleep hours as JSON"

    def to_extracted_data(self, parsed):
        return ExtractedData(domain_id=self.domain_id, data={'hours': parsed.hours}, confidence=parsed.confidence)


class TestLLMExtractor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.generator = MagicMock()
        self.generator.generate_json = AsyncMock()
        self.extractor = SleepExtractor(generator=self.generator)
        self.context = ExtractionContext(conversation_id="conv-1")

    async def test_valid_json_is_extracted(self):
        self.generator.generate_json.return_value = json.dumps({'hours': 5, 'confidence': 0.8})
        result = await self.extractor.extract("I slept 5 hours", self.context)
        self.assertEqual(result.data, {'hours': 5.0})
        self.assertEqual(result.confidence, 0.8)

    async def test_invalid_output_means_nothing_extracted(self):
        self.generator.generate_json.return_value = "not json"
        self.assertIsNone(await self.extractor.extract("hi", self.context))
        self.generator.generate_json.return_value = json.dumps({'minutes': 5})
        self.assertIsNone(await self.extractor.extract("hi", self.context))

    async def test_zero_confidence_means_nothing_extracted(self):
        self.generator.generate_json.return_value = json.dumps({'hours': 0, 'confidence': 0})
        self.assertIsNone(await self.extractor.extract("hello", self.context))

    async def test_missing_generator_raises(self):
        with self.assertRaises(RuntimeError):
            await SleepExtractor().extract("hi", self.context)


if __name__ == '__main__':
    unittest.main()
