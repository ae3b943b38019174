"""
core/stages/extraction.py

Extraction stage: lets each relevant domain extract structured facts from the
user message, appends accepted facts to the state and stores them in the
domain's storage backend.

A domain is relevant when it is enabled, declares the extraction capability,
has an extractor registered and, if it configures trigger keywords, one of
them occurs in the message. Extractors run concurrently; one extractor's
failure never affects another domain.
Extractors receive the agent state store in their `ExtractionContext` so a
pending clarification can be kept across turns.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Tuple

from core.plugins import BaseExtractor, ExtractionContext
from core.registries import DomainRegistry, ExtractorRegistry
from core.stages.base import BaseStage
from monitoring.metrics import EXTRACTION_FAILURES
from services.agent_state import AgentStateStore
from services.domain_storage import DomainStorage
from shared.models import ConversationState, DomainDefinition, ExtractedData
from shared.utils import to_iso


class ExtractionStage(BaseStage):
    name = "extraction"
    fail_open = True

    def __init__(
        self,
        domain_registry: DomainRegistry,
        extractor_registry: ExtractorRegistry,
        storages: Optional[Mapping[str, DomainStorage]] = None,
        default_confidence_threshold: float = 0.5,
        agent_state: Optional[AgentStateStore] = None,
    ):
        super().__init__()
        self.domain_registry = domain_registry
        self.extractor_registry = extractor_registry
        self.storages = storages if storages is not None else {}
        self.default_confidence_threshold = default_confidence_threshold
        self.agent_state = agent_state

    def relevant_domains(self, message: str) -> List[Tuple[DomainDefinition, BaseExtractor]]:
        lowered = message.lower()
        relevant = []
        for domain in self.domain_registry.get_active_domains():
            if not domain.capabilities.extraction:
                continue
            extractor = self.extractor_registry.get_extractor(domain.id)
            if extractor is None:
                continue
            triggers = domain.config.steering.triggers
            if triggers and not any(trigger in lowered for trigger in triggers):
                continue
            relevant.append((domain, extractor))
        return relevant

    def threshold_for(self, domain: DomainDefinition) -> float:
        threshold = domain.config.confidence_threshold
        return threshold if threshold is not None else self.default_confidence_threshold

    async def _store(self, state: ConversationState, extracted: ExtractedData) -> None:
        storage = self.storages.get(extracted.domain_id)
        if storage is None:
            return
        record = {
            'domain_id': extracted.domain_id,
            'user_id': state.user_id,
            'conversation_id': state.conversation_id,
            'data': extracted.data,
            'confidence': extracted.confidence,
            'extracted_at': extracted.timestamp,
        }
        try:
            await asyncio.to_thread(storage.store, record)
        except Exception as e:
            self.logger.error(
                f"[{self.name}] Failed to store extraction for {extracted.domain_id}: {e}",
                extra={'domain_id': extracted.domain_id, 'conversation_id': state.conversation_id},
                exc_info=True
            )

    async def process(self, state: ConversationState) -> ConversationState:
        message = state.current_message
        if not message:
            return state

        relevant = self.relevant_domains(message)
        if not relevant:
            return state

        domain_context: Dict[str, Dict] = dict(state.metadata.get('domain_context', {}))
        recent = state.messages[:-1]
        results = await asyncio.gather(
            *(
                extractor.extract(message, ExtractionContext(
                    conversation_id=state.conversation_id,
                    recent_messages=recent,
                    domain_context=domain_context.get(domain.id, {}),
                    agent_state=self.agent_state,
                ))
                for domain, extractor in relevant
            ),
            return_exceptions=True,
        )

        extractions = dict(state.extractions)
        accepted: List[ExtractedData] = []
        for (domain, _), result in zip(relevant, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                EXTRACTION_FAILURES.labels(domain_id=domain.id).inc()
                self.logger.warning(
                    f"[{self.name}] Extractor for {domain.id} failed: {result}",
                    extra={'domain_id': domain.id, 'conversation_id': state.conversation_id},
                    exc_info=result
                )
                continue
            if result is None:
                continue
            if result.confidence < self.threshold_for(domain):
                self.logger.debug(
                    f"[{self.name}] Discarded {domain.id} extraction below threshold ({result.confidence:.2f})",
                    extra={'domain_id': domain.id}
                )
                continue

            extractions[domain.id] = list(extractions.get(domain.id, [])) + [result]
            previous = domain_context.get(domain.id, {})
            domain_context[domain.id] = {
                'last_extraction': to_iso(result.timestamp),
                'extraction_count': previous.get('extraction_count', 0) + 1,
                'active': True,
            }
            accepted.append(result)

        if not accepted:
            return state

        for extracted in accepted:
            await self._store(state, extracted)

        metadata = dict(state.metadata)
        metadata['domain_context'] = domain_context
        metadata['active_domains'] = [item.domain_id for item in accepted]
        self.logger.info(
            f"[{self.name}] Accepted extractions from {len(accepted)} domains",
            extra={'conversation_id': state.conversation_id}
        )
        return replace(state, extractions=extractions, metadata=metadata)
