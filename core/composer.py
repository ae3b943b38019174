"""
core/composer.py

Response composition: joins the reply segments produced by different modes
into one reply.

Segments are kept in the order they are given (the primary mode first).
Between two consecutive segments from different modes a transition is
inserted according to the configured style:
- "phrase": a connector phrase from the configured list is prefixed to the
  next segment, rotating deterministically through the list. No phrase is
  added when the previous segment ends with a question or the next segment
  already starts with a connector.
- "paragraph": segments are separated by a blank line only.
- "none": segments are joined with a single space.
Segments from the same mode are always separated by a blank line.

Optional deduplication drops a later segment when most of its sentences were
already said by earlier segments.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from shared.models import ModeSegment

logger = logging.getLogger(__name__)

TRANSITION_STYLES = ("phrase", "paragraph", "none")
DEFAULT_TRANSITION_PHRASES = ["Also,", "Additionally,", "On another note,", "Furthermore,"]
CONNECTOR_WORDS = ("however", "but", "also", "additionally", "furthermore", "moreover", "on another note")

DUPLICATE_OVERLAP_RATIO = 0.3
MIN_KEY_PHRASE_LENGTH = 10
SENTENCE_SPLIT = re.compile(r"[.!?]+")


def key_phrases(text: str) -> List[str]:
    """Lowercased sentences long enough to be meaningful for overlap checks."""
    return [
        sentence.strip().lower()
        for sentence in SENTENCE_SPLIT.split(text)
        if len(sentence.strip()) > MIN_KEY_PHRASE_LENGTH
    ]


def lower_first(text: str) -> str:
    """Lower-case a leading capital so the segment continues a transition phrase ('Here' but not 'I' or 'AI')."""
    if len(text) > 1 and text[0].isupper() and text[1].islower():
        return text[0].lower() + text[1:]
    return text


class ResponseComposer:
    """
    Composes mode segments into a single reply.

    Args:
        transition_style (str): One of "phrase", "paragraph" or "none".
        transition_phrases (Sequence[str], optional): Phrases used by the
            "phrase" style.
        enable_deduplication (bool): Drop segments that repeat earlier ones.
        max_response_length (int): Length above which `validate_segments`
            reports a warning.
    """

    def __init__(
        self,
        transition_style: str = "phrase",
        transition_phrases: Optional[Sequence[str]] = None,
        enable_deduplication: bool = True,
        max_response_length: int = 4000,
    ):
        if transition_style not in TRANSITION_STYLES:
            raise ValueError(f"Unknown transition style: {transition_style}")
        self.transition_style = transition_style
        self.transition_phrases = list(transition_phrases or DEFAULT_TRANSITION_PHRASES)
        self.enable_deduplication = enable_deduplication
        self.max_response_length = max_response_length

    def deduplicate(self, segments: Sequence[ModeSegment]) -> List[ModeSegment]:
        kept: List[ModeSegment] = []
        seen_phrases = set()
        for segment in segments:
            phrases = key_phrases(segment.content)
            if kept and phrases:
                overlap = sum(1 for phrase in phrases if phrase in seen_phrases) / len(phrases)
                if overlap >= DUPLICATE_OVERLAP_RATIO:
                    logger.debug(f"[ResponseComposer] Dropped duplicate {segment.mode.value} segment ({overlap:.0%} overlap)")
                    continue
            seen_phrases.update(phrases)
            kept.append(segment)
        return kept

    def needs_transition(self, previous: ModeSegment, following: ModeSegment) -> bool:
        if previous.mode == following.mode:
            return False
        if previous.content.rstrip().endswith("?"):
            return False
        return not following.content.lstrip().lower().startswith(CONNECTOR_WORDS)

    def compose(self, segments: Sequence[ModeSegment]) -> str:
        """
        Join segments into the final reply.

        Args:
            segments (Sequence[ModeSegment]): Segments in presentation order.

        Returns:
            str: The composed reply; an empty string when no segment has content.
        """
        return self.compose_segments(segments)[0]

    def compose_segments(self, segments: Sequence[ModeSegment]) -> Tuple[str, List[ModeSegment]]:
        """Compose the reply and return it with the segments that made it into the reply."""
        segments = [s for s in segments if s.content and s.content.strip()]
        if self.enable_deduplication:
            segments = self.deduplicate(segments)
        if not segments:
            return "", []

        parts = [segments[0].content.strip()]
        phrase_index = 0
        for previous, following in zip(segments, segments[1:]):
            text = following.content.strip()
            if previous.mode == following.mode or self.transition_style == "paragraph":
                parts.append(f"\n\n{text}")
            elif self.transition_style == "none":
                parts.append(f" {text}")
            elif self.needs_transition(previous, following):
                phrase = self.transition_phrases[phrase_index % len(self.transition_phrases)]
                phrase_index += 1
                parts.append(f"\n\n{phrase} {lower_first(text)}")
            else:
                parts.append(f"\n\n{text}")
        return "".join(parts), segments

    def validate_segments(self, segments: Sequence[ModeSegment]) -> Dict[str, object]:
        """Report empty segments and replies likely too long for the client."""
        issues = []
        for index, segment in enumerate(segments):
            if not segment.content or not segment.content.strip():
                issues.append(f"Segment {index} ({segment.mode.value}) is empty")
        total_length = sum(len(segment.content or "") for segment in segments)
        if total_length > self.max_response_length:
            issues.append(f"Combined length {total_length} exceeds {self.max_response_length} characters")
        return {'valid': not issues, 'issues': issues}
