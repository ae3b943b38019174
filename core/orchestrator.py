"""
core/orchestrator.py

Conversation orchestrator: the entry point for processing one user message.

This module contains the per-turn coordination logic that:
1. Loads (or creates) the conversation, its recent messages and its latest
   state snapshot
2. Runs the stage pipeline on a fresh turn state
3. Persists the user message, the assistant reply and the new snapshot

The stores are synchronous SQLite code, so their calls are moved to worker
threads to keep the event loop free while a turn waits on disk.
"""

import asyncio
import time
from dataclasses import replace
from typing import List, Optional

from config.logging_config import get_logger
from core.pipeline import StagePipeline
from monitoring.metrics import TURN_PROCESSING_TIME, track_errors, track_latency
from services.conversation_store import ConversationStore
from shared.errors import GenerationError
from shared.models import ConversationMode, ConversationState, TurnResult
from shared.utils import generate_id, preview, utc_now

DEFAULT_MESSAGE_LIMIT = 10

# Metadata written by stages for one turn only; never carried into the next turn.
TURN_METADATA_KEYS = ('steering_applied', 'steering_failed', 'active_domains', 'modes_used')


class ConversationOrchestrator:
    """
    Coordinates loading, pipeline execution and persistence of conversation turns.

    Responsibilities:
    - Conversation selection (explicit id, most recent active, or new)
    - Building the turn state from the latest snapshot and recent messages
    - Running the stage pipeline
    - Saving the completed turn atomically

    Args:
        conversation_store (ConversationStore): Persistence for conversations,
            messages and state snapshots.
        pipeline (StagePipeline): The per-turn stage pipeline.
        message_limit (int): How many recent messages are loaded as history.
    """

    def __init__(
        self,
        conversation_store: ConversationStore,
        pipeline: StagePipeline,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
    ):
        self.conversation_store = conversation_store
        self.pipeline = pipeline
        self.message_limit = message_limit
        self.logger = get_logger(__name__)
        self.logger.info(f"[ConversationOrchestrator] Initialized with stages: {pipeline.stage_names}")

    async def _load_conversation(
        self, user_id: str, conversation_id: Optional[str], force_new: bool
    ) -> str:
        store = self.conversation_store
        if force_new:
            active = await asyncio.to_thread(store.find_active_conversation, user_id)
            if active is not None:
                await asyncio.to_thread(store.archive_conversation, active['id'])
            conversation = await asyncio.to_thread(store.create_conversation, user_id)
        elif conversation_id:
            conversation = await asyncio.to_thread(store.get_conversation, conversation_id)
            if conversation is None:
                conversation = await asyncio.to_thread(store.create_conversation, user_id, conversation_id)
        else:
            conversation = await asyncio.to_thread(store.find_active_conversation, user_id)
            if conversation is None:
                conversation = await asyncio.to_thread(store.create_conversation, user_id)
        return conversation['id']

    async def _load_state(self, conversation_id: str, user_id: str) -> ConversationState:
        """Latest snapshot of the conversation; a new conversation gets an initial smalltalk snapshot."""
        state = await asyncio.to_thread(self.conversation_store.get_latest_state, conversation_id)
        if state is None:
            state = ConversationState(
                conversation_id=conversation_id,
                mode=ConversationMode.SMALLTALK,
                metadata={'user_id': user_id},
            )
            await asyncio.to_thread(self.conversation_store.save_state, state)
        return state

    @track_latency(TURN_PROCESSING_TIME)
    @track_errors('turn', 'process_message')
    async def process_message(
        self,
        user_id: str,
        message: str,
        conversation_id: Optional[str] = None,
        force_new: bool = False,
    ) -> TurnResult:
        """
        Process one user message end to end.

        Args:
            user_id (str): Owner of the conversation.
            message (str): The user's message.
            conversation_id (Optional[str]): Conversation to continue. Created
                under this id if it does not exist yet.
            force_new (bool): Start a new conversation even if one is active.

        Returns:
            TurnResult: The reply and turn metadata.

        Raises:
            StorageError: If loading or saving the conversation fails.
            PipelineError: If a stage that is not fail-open fails.
        """
        start_time = time.perf_counter()
        conversation_id = await self._load_conversation(user_id, conversation_id, force_new)
        log = get_logger(__name__, conversation_id=conversation_id)
        log.info(
            f"[ConversationOrchestrator] Processing message for user {user_id}",
            extra={'extra_fields': {'message_preview': preview(message)}}
        )

        previous = await self._load_state(conversation_id, user_id)
        history = await asyncio.to_thread(
            self.conversation_store.get_recent_messages, conversation_id, self.message_limit
        )

        now = utc_now()
        metadata = {key: value for key, value in previous.metadata.items() if key not in TURN_METADATA_KEYS}
        metadata['user_id'] = user_id
        state = replace(
            previous,
            id=generate_id(),
            created_at=now,
            last_activity_at=now,
            metadata=metadata,
            messages=history + [{'role': 'user', 'content': message}],
            steering_hints=None,
            intents=None,
            reply=None,
        )

        state = await self.pipeline.run(state)

        if not state.reply:
            raise GenerationError("Pipeline finished without a reply")

        message_id = await asyncio.to_thread(
            self.conversation_store.save_turn, state, message, state.reply
        )

        processing_time_ms = (time.perf_counter() - start_time) * 1000
        modes_used = [ConversationMode(mode) for mode in state.metadata.get('modes_used', [state.mode.value])]
        log.info(
            f"[ConversationOrchestrator] Turn completed in {processing_time_ms:.0f}ms",
            extra={'extra_fields': {'mode': state.mode.value, 'modes_used': [m.value for m in modes_used]}}
        )
        return TurnResult(
            reply=state.reply,
            conversation_id=conversation_id,
            message_id=message_id,
            mode=state.mode,
            modes_used=modes_used,
            steering_hints=state.steering_hints,
            processing_time_ms=processing_time_ms,
        )

    async def get_state_history(self, conversation_id: str, limit: int = 10) -> List[ConversationState]:
        """The most recent `limit` state snapshots of a conversation, newest first."""
        return await asyncio.to_thread(self.conversation_store.get_state_history, conversation_id, limit)
