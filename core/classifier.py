"""
core/classifier.py

Multi-intent mode classification.

A single user message can carry more than one intent ("hi! also, how do I
sleep better?"). The classifier asks the text-generation service to list the
intents it sees, validates the JSON answer with pydantic, and maps each
intent to a `ConversationMode`. The first intent listed is the primary one.

The classifier never raises: when the model output is unusable the turn is
classified as a single intent in the conversation's current mode.
"""

import json
import logging
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from shared.models import ConversationMode, ConversationState, Intent, MultiIntentResult
from shared.utils import preview

logger = logging.getLogger(__name__)

MODE_DESCRIPTIONS = {
    ConversationMode.SMALLTALK: "Greetings, casual conversation, personal chat",
    ConversationMode.CONSULT: "Advice seeking, problem-solving, questions needing expertise",
    ConversationMode.META: "Questions about the assistant, its capabilities, how to use it",
}

FALLBACK_CONFIDENCE = 0.5
RECENT_MESSAGES_IN_PROMPT = 3


class IntentPayload(BaseModel):
    """One intent as returned by the model."""
    mode: str
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    trigger: Optional[str] = None
    essential: bool = True


class ClassificationResponse(BaseModel):
    """
    Validate the JSON classification returned by the LLM.

    Validation stays lenient on optional fields so a slightly different but
    usable answer is still accepted; an answer without intents is rejected.
    """
    intents: List[IntentPayload] = Field(..., min_length=1)
    requires_orchestration: bool = False
    composition_strategy: str = "sequential"


def to_mode(value: str) -> ConversationMode:
    """Map a model-provided mode name to a mode; unknown names become CONSULT."""
    normalized = value.strip().lower()
    for mode in ConversationMode:
        if mode.value == normalized:
            return mode
    return ConversationMode.CONSULT


def are_modes_compatible(first: ConversationMode, second: ConversationMode) -> bool:
    """META answers stand alone; every other pair of modes can be combined."""
    if first == second:
        return True
    return ConversationMode.META not in (first, second)


class ModeClassifier:
    """
    Classifies user messages into one or more conversation modes.

    Design notes:
    - The prompt template and the text generator are injected, so the
      classifier has no knowledge of providers or config files.
    - Only the last few messages are shown to the model to keep latency low.
    """

    def __init__(self, generator, prompt_template: str):
        self.generator = generator
        self.prompt_template = prompt_template
        logger.info("[ModeClassifier] Initialized multi-intent classifier")

    def build_prompt(self, message: str, state: ConversationState) -> str:
        history = state.messages[:-1] if state.messages else []
        recent = "\n".join(
            f"{m.get('role')}: {m.get('content')}" for m in history[-RECENT_MESSAGES_IN_PROMPT:]
        ) or "(no previous messages)"
        descriptions = "\n".join(
            f"- {mode.name}: {description}" for mode, description in MODE_DESCRIPTIONS.items()
        )
        return self.prompt_template.format(
            mode_descriptions=descriptions,
            recent_messages=recent,
            message=message,
        )

    def fallback(self, state: ConversationState) -> MultiIntentResult:
        return MultiIntentResult(primary=Intent(mode=state.mode, confidence=FALLBACK_CONFIDENCE))

    def to_result(self, response: ClassificationResponse) -> MultiIntentResult:
        intents = [
            Intent(
                mode=to_mode(payload.mode),
                confidence=payload.confidence,
                trigger=payload.trigger,
                essential=payload.essential,
            )
            for payload in response.intents
        ]
        primary, candidates = intents[0], intents[1:]

        secondary: List[Intent] = []
        seen_modes = {primary.mode}
        for intent in candidates:
            if intent.mode in seen_modes or not are_modes_compatible(primary.mode, intent.mode):
                continue
            seen_modes.add(intent.mode)
            secondary.append(intent)

        return MultiIntentResult(
            primary=primary,
            secondary=secondary,
            requires_orchestration=response.requires_orchestration and bool(secondary),
            composition_strategy=response.composition_strategy,
        )

    async def classify(self, message: str, state: ConversationState) -> MultiIntentResult:
        """
        Classify a message into a primary intent and optional secondary intents.

        Args:
            message (str): The user message of this turn.
            state (ConversationState): Current state; supplies recent history
                and the fallback mode.

        Returns:
            MultiIntentResult: The classification. Falls back to a single
            intent in the current mode when the model call or its output fails.
        """
        try:
            raw = await self.generator.generate_json(
                self.build_prompt(message, state), message, model_key="classification"
            )
            response = ClassificationResponse.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"[ModeClassifier] Unusable classification output: {e}")
            return self.fallback(state)
        except Exception as e:
            logger.error(f"[ModeClassifier] Classification error: {e}")
            return self.fallback(state)

        result = self.to_result(response)
        logger.info(
            f"[ModeClassifier] Classified '{preview(message)}' as {result.primary.mode.value}"
            f" (+{len(result.secondary)} secondary)"
        )
        return result
