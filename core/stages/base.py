"""
Base class for all pipeline stages.

This module defines the BaseStage abstract base class that every stage of the
per-turn pipeline implements. It enforces a common interface and provides
shared functionality: latency metrics, start/end logging with the
conversation id attached, and the stage's failure policy.

Failure policy:
- fail_open = True: an exception is logged and counted, and the stage returns
  the state it received, so the turn continues without this stage's output.
- fail_open = False: the exception is wrapped in `PipelineError` and the turn
  is aborted.
"""

from abc import ABC, abstractmethod
import logging

from config.logging_config import get_logger
from monitoring.metrics import ERROR_COUNT, STAGE_PROCESSING_TIME, track_latency
from shared.errors import PipelineError
from shared.models import ConversationState


class BaseStage(ABC):
    """
    Abstract base class for pipeline stages.

    Concrete stages set `name` (used for logs and metrics) and `fail_open`,
    and implement `process`. Callers run a stage through `run`, never through
    `process` directly, so the failure policy is always applied.
    """

    name: str = "stage"
    fail_open: bool = True

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def process(self, state: ConversationState) -> ConversationState:
        """
        Transform the state for this stage.

        Implementations must not mutate `state`; they return a new object
        (usually via `dataclasses.replace`).
        """

    @track_latency(STAGE_PROCESSING_TIME, lambda self: {'stage_name': self.name})
    async def run(self, state: ConversationState) -> ConversationState:
        """
        Run the stage with logging, metrics and the stage's failure policy.

        Args:
            state (ConversationState): Input state of this stage.

        Returns:
            ConversationState: The stage's output, or `state` itself when a
            fail-open stage failed.

        Raises:
            PipelineError: When a stage that is not fail-open fails.
        """
        log = get_logger(self.logger.name, conversation_id=state.conversation_id, stage_name=self.name)
        log.debug(f"[{self.name}] Stage started")

        try:
            result = await self.process(state)
        except Exception as e:
            ERROR_COUNT.labels(type='stage', location=self.name).inc()
            if self.fail_open:
                log.error(f"[{self.name}] Stage failed, continuing with unmodified state: {e}", exc_info=True)
                return state
            log.error(f"[{self.name}] Stage failed, aborting turn: {e}", exc_info=True)
            if isinstance(e, PipelineError):
                raise
            raise PipelineError(self.name, e) from e

        log.debug(f"[{self.name}] Stage completed")
        return result
