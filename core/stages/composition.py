"""
core/stages/composition.py

Composition stage: generates the reply for the turn.

The primary intent always gets a segment. Secondary intents get one when
their confidence exceeds the configured threshold and their mode is not the
primary mode. At most `max_modes_per_response` segments are produced. All
segments are generated concurrently; a failed secondary segment is dropped,
a failed primary segment aborts the turn.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List

from core.composer import ResponseComposer
from core.modes import ModeHandler
from core.stages.base import BaseStage
from shared.errors import GenerationError
from shared.models import ConversationMode, ConversationState, Intent, ModeSegment


class CompositionStage(BaseStage):
    name = "composition"
    fail_open = False

    def __init__(
        self,
        generator,
        composer: ResponseComposer,
        handlers: Dict[ConversationMode, ModeHandler],
        max_modes_per_response: int = 3,
        secondary_confidence_threshold: float = 0.6,
    ):
        super().__init__()
        self.generator = generator
        self.composer = composer
        self.handlers = handlers
        self.max_modes_per_response = max_modes_per_response
        self.secondary_confidence_threshold = secondary_confidence_threshold

    def select_intents(self, state: ConversationState) -> List[Intent]:
        """Primary intent first, then qualifying secondary intents in classifier order."""
        if state.intents is None:
            return [Intent(mode=state.mode, confidence=1.0)]

        selected = [state.intents.primary]
        modes = {state.intents.primary.mode}
        for intent in state.intents.secondary:
            if len(selected) >= self.max_modes_per_response:
                break
            if intent.mode in modes or intent.confidence <= self.secondary_confidence_threshold:
                continue
            modes.add(intent.mode)
            selected.append(intent)
        return selected

    async def generate_segment(self, state: ConversationState, intent: Intent, focused: bool) -> ModeSegment:
        handler = self.handlers[intent.mode]
        system_prompt = handler.build_system_prompt(state, intent, focused=focused)
        content = await self.generator.generate(
            history=state.messages[:-1],
            user_message=state.current_message,
            system_prompt=system_prompt,
        )
        return ModeSegment(mode=intent.mode, content=content, confidence=intent.confidence, source_text=intent.trigger)

    async def process(self, state: ConversationState) -> ConversationState:
        intents = self.select_intents(state)
        focused = len(intents) > 1
        results = await asyncio.gather(
            *(self.generate_segment(state, intent, focused) for intent in intents),
            return_exceptions=True,
        )

        primary = results[0]
        if isinstance(primary, BaseException):
            raise primary
        segments = [primary]
        for intent, result in zip(intents[1:], results[1:]):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                self.logger.warning(
                    f"[{self.name}] Dropped {intent.mode.value} segment: {result}",
                    extra={'conversation_id': state.conversation_id}
                )
                continue
            segments.append(result)

        validation = self.composer.validate_segments(segments)
        if not validation['valid']:
            self.logger.warning(
                f"[{self.name}] Segment issues: {'; '.join(validation['issues'])}",
                extra={'conversation_id': state.conversation_id}
            )

        reply, kept = self.composer.compose_segments(segments)
        if not reply:
            raise GenerationError("Generated reply is empty")

        metadata = dict(state.metadata)
        metadata['modes_used'] = [segment.mode.value for segment in kept]
        return replace(state, reply=reply, mode=intents[0].mode, metadata=metadata)
