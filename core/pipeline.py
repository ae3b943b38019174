"""
core/pipeline.py

Sequential stage pipeline.

Stages run strictly one after another: stage N+1 starts only after stage N
returned, and receives stage N's output. Failure handling is per stage (see
`BaseStage`), so the pipeline itself only sequences and logs.
"""

import logging
from typing import List, Sequence

from core.stages.base import BaseStage
from shared.models import ConversationState

logger = logging.getLogger(__name__)


class StagePipeline:
    """Runs an ordered list of stages over a conversation state."""

    def __init__(self, stages: Sequence[BaseStage]):
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names in pipeline: {names}")
        self.stages: List[BaseStage] = list(stages)
        logger.info(f"[StagePipeline] Initialized with stages: {' -> '.join(names)}")

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    async def run(self, state: ConversationState) -> ConversationState:
        """
        Run every stage in order.

        Raises:
            PipelineError: Propagated from a stage that is not fail-open.
        """
        for stage in self.stages:
            state = await stage.run(state)
        return state
