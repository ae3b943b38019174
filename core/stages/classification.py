"""
core/stages/classification.py

Classification stage: decides which mode(s) the turn is handled in.
"""

from dataclasses import replace

from core.classifier import ModeClassifier
from core.stages.base import BaseStage
from shared.models import ConversationState


class ClassificationStage(BaseStage):
    """Stores the multi-intent classification on the state and switches `mode` to the primary intent."""

    name = "classification"
    fail_open = True

    def __init__(self, classifier: ModeClassifier):
        super().__init__()
        self.classifier = classifier

    async def process(self, state: ConversationState) -> ConversationState:
        message = state.current_message
        if not message:
            return state

        intents = await self.classifier.classify(message, state)
        metadata = dict(state.metadata)
        metadata['classification'] = {
            'primary': intents.primary.mode.value,
            'confidence': intents.primary.confidence,
            'secondary': [intent.mode.value for intent in intents.secondary],
        }
        return replace(state, intents=intents, mode=intents.primary.mode, metadata=metadata)
