"""
core/stages/__init__.py

Pipeline stages. Each stage takes a `ConversationState` and returns a new one.
"""

from .base import BaseStage
from .decay import DecayStage
from .classification import ClassificationStage
from .extraction import ExtractionStage
from .steering import SteeringStage, merge_hint_sets
from .composition import CompositionStage

__all__ = [
    'BaseStage',
    'DecayStage',
    'ClassificationStage',
    'ExtractionStage',
    'SteeringStage',
    'merge_hint_sets',
    'CompositionStage',
]
