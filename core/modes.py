"""
core/modes.py

Mode handlers: one per `ConversationMode`, each responsible for building the
system prompt a reply segment is generated with.

The set of modes is closed, so handlers are plain classes collected in a
dispatch table built by `build_mode_handlers`; there is no registration API.
"""

from typing import Dict, List, Optional

from shared.models import ConversationMode, ConversationState, GoalStatus, Intent

FOCUS_INSTRUCTION = (
    "This reply is one part of a longer answer. Respond only to this part of the user's message: "
    "\"{trigger}\". Keep it short and do not greet the user again."
)


class ModeHandler:
    """
    Base class for mode handlers.

    Args:
        base_prompt (str): The mode's system prompt template text.
    """

    mode: ConversationMode

    def __init__(self, base_prompt: str):
        self.base_prompt = base_prompt

    def steering_section(self, state: ConversationState) -> Optional[str]:
        hints = state.steering_hints
        if not hints or not hints.suggestions:
            return None
        lines = "\n".join(f"- {suggestion}" for suggestion in hints.suggestions)
        return f"If it fits naturally, consider steering the conversation toward:\n{lines}"

    def extra_sections(self, state: ConversationState) -> List[str]:
        return []

    def build_system_prompt(self, state: ConversationState, intent: Optional[Intent] = None, focused: bool = False) -> str:
        """
        Build the system prompt for generating this mode's reply segment.

        Args:
            state (ConversationState): Turn state after steering.
            intent (Intent, optional): The intent this segment answers.
            focused (bool): True when the reply is composed from several
                segments and this one should address only `intent.trigger`.

        Returns:
            str: The full system prompt.
        """
        sections = [self.base_prompt]
        sections.extend(self.extra_sections(state))
        steering = self.steering_section(state)
        if steering:
            sections.append(steering)
        if focused and intent is not None and intent.trigger:
            sections.append(FOCUS_INSTRUCTION.format(trigger=intent.trigger))
        return "\n\n".join(sections)


class ConsultModeHandler(ModeHandler):
    mode = ConversationMode.CONSULT

    def extra_sections(self, state: ConversationState) -> List[str]:
        goals = [goal.description for goal in state.goals if goal.status == GoalStatus.ACTIVE]
        if not goals:
            return []
        lines = "\n".join(f"- {goal}" for goal in goals)
        return [f"The user is currently working toward these goals:\n{lines}"]


class SmalltalkModeHandler(ModeHandler):
    mode = ConversationMode.SMALLTALK


class MetaModeHandler(ModeHandler):
    """Explains the assistant itself; domain steering does not apply here."""

    mode = ConversationMode.META

    def steering_section(self, state: ConversationState) -> Optional[str]:
        return None


HANDLER_CLASSES = (ConsultModeHandler, SmalltalkModeHandler, MetaModeHandler)


def build_mode_handlers(prompts: Dict[str, str]) -> Dict[ConversationMode, ModeHandler]:
    """
    Build the handler dispatch table from prompt templates keyed by mode value.

    Raises:
        KeyError: If a mode has no prompt template.
    """
    return {cls.mode: cls(prompts[cls.mode.value]) for cls in HANDLER_CLASSES}
