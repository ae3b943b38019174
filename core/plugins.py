"""
core/plugins.py

Base classes domain plugins implement.

A domain ships up to two kinds of plugins:
- steering strategies, which look at the conversation state and propose
  suggestions for where the conversation could go next;
- an extractor, which turns a user message into structured facts for the
  domain's storage.

Plugins never mutate the state they are given. Short-lived plugin state
(a pending clarification, a question already asked) lives in the agent state
store, which the application context binds to every registered plugin.

Strategies declare the domains they belong to explicitly through
`domain_ids`; the registry matches on that set, never on the shape of the
strategy id.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from services.agent_state import AgentStateStore
from shared.models import ConversationState, ExtractedData, SteeringHints
from shared.utils import dedupe_suggestions, from_iso, utc_now

logger = logging.getLogger(__name__)


class AgentStateAccess:
    """
    Async access to the agent state store for plugins.

    `agent_state` is bound when the plugin is registered with the application
    context; a plugin may also receive it through its constructor. The store
    is synchronous SQLite code, so calls run in worker threads.
    """

    agent_state: Optional[AgentStateStore] = None

    def _store(self) -> AgentStateStore:
        if self.agent_state is None:
            raise RuntimeError(f"[{self.__class__.__name__}] No agent state store bound")
        return self.agent_state

    async def save_agent_state(
        self,
        conversation_id: str,
        domain_id: str,
        state_type: str,
        data: Dict[str, Any],
        ttl_seconds: Optional[int] = None,
    ) -> str:
        return await asyncio.to_thread(
            self._store().save_state, conversation_id, domain_id, state_type, data, ttl_seconds
        )

    async def get_agent_state(
        self, conversation_id: str, domain_id: str, state_type: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._store().get_state, conversation_id, domain_id, state_type)

    async def resolve_agent_state(
        self, conversation_id: str, domain_id: str, state_type: Optional[str] = None
    ) -> bool:
        return await asyncio.to_thread(self._store().resolve_state, conversation_id, domain_id, state_type)


class BaseSteeringStrategy(AgentStateAccess, ABC):
    """
    Abstract base class for steering strategies.

    Subclasses set `strategy_id`, `priority` (0.0 - 1.0, higher wins) and
    `domain_ids`, and implement `should_apply` and `generate_hints`.
    """

    strategy_id: str = ""
    priority: float = 0.5
    domain_ids: FrozenSet[str] = frozenset()

    @abstractmethod
    def should_apply(self, state: ConversationState) -> bool:
        """Cheap, side-effect free check whether this strategy is relevant now."""

    @abstractmethod
    async def generate_hints(self, state: ConversationState) -> SteeringHints:
        """Produce hints for the given state without modifying it."""

    def merge_suggestions(self, existing: List[str], new_suggestions: List[str], max_suggestions: int = 3) -> List[str]:
        """Combine two suggestion lists with case-insensitive dedup, keeping the first form."""
        return dedupe_suggestions(list(existing) + list(new_suggestions), limit=max_suggestions)

    def has_time_elapsed(self, last_check: Optional[Union[datetime, str]], hours: float, now: Optional[datetime] = None) -> bool:
        """
        Check whether at least `hours` have passed since `last_check`.

        Args:
            last_check: Previous check time as a datetime or ISO string; None counts as elapsed.
            hours: Threshold in hours.
            now: Reference time, defaults to the current UTC time.

        Returns:
            bool: True if the threshold has been reached.
        """
        if last_check is None:
            return True
        if isinstance(last_check, str):
            last_check = from_iso(last_check)
        now = now or utc_now()
        return (now - last_check).total_seconds() / 3600 >= hours

    def log_activation(self, state: ConversationState, reason: str) -> None:
        logger.debug(
            f"[{self.__class__.__name__}] Steering strategy activated: {reason}",
            extra={
                'strategy_id': self.strategy_id,
                'conversation_id': state.conversation_id,
                'extra_fields': {'priority': self.priority}
            }
        )


@dataclass
class ExtractionContext:
    """What an extractor may look at besides the message itself."""
    conversation_id: str
    recent_messages: List[Dict[str, str]] = field(default_factory=list)
    domain_context: Dict[str, Any] = field(default_factory=dict)
    agent_state: Optional[AgentStateStore] = None


class BaseExtractor(AgentStateAccess, ABC):
    """Abstract base class for domain extractors."""

    domain_id: str = ""

    @abstractmethod
    async def extract(self, message: str, context: ExtractionContext) -> Optional[ExtractedData]:
        """
        Extract domain facts from a message.

        Returns:
            Optional[ExtractedData]: The facts, or None when the message holds
            nothing relevant to this domain.
        """


class LLMExtractor(BaseExtractor):
    """
    Extractor that asks the text-generation service for JSON and validates it
    against a pydantic schema.

    Subclasses set `schema` and implement `build_extraction_prompt` and
    `to_extracted_data`. Output that is not JSON or does not match the schema
    is logged and treated as "nothing extracted"; generation failures
    propagate so the extraction stage can account for them.
    """

    schema: Type[BaseModel]

    def __init__(self, generator=None):
        self.generator = generator

    @abstractmethod
    def build_extraction_prompt(self, message: str, context: ExtractionContext) -> str:
        """System prompt describing what to extract and the expected JSON shape."""

    @abstractmethod
    def to_extracted_data(self, parsed: BaseModel) -> ExtractedData:
        """Turn a validated schema instance into `ExtractedData` with a confidence."""

    async def extract(self, message: str, context: ExtractionContext) -> Optional[ExtractedData]:
        if self.generator is None:
            raise RuntimeError(f"[{self.__class__.__name__}] No text generator configured")

        prompt = self.build_extraction_prompt(message, context)
        raw = await self.generator.generate_json(prompt, message)

        try:
            parsed = self.schema.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(
                f"[{self.__class__.__name__}] Extraction output rejected: {e}",
                extra={'domain_id': self.domain_id}
            )
            return None

        extracted = self.to_extracted_data(parsed)
        if extracted.confidence == 0:
            logger.debug(f"[{self.__class__.__name__}] Nothing extracted", extra={'domain_id': self.domain_id})
            return None
        return extracted
