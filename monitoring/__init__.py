"""
Monitoring package initializer.

This package exposes Prometheus metrics and helper decorators for tracking
turn, stage, plugin and storage behaviour.
"""

from .metrics import (
    TURN_PROCESSING_TIME,
    ERROR_COUNT,
    STAGE_PROCESSING_TIME,
    STEERING_STRATEGY_FAILURES,
    EXTRACTION_FAILURES,
    AGENT_STATES_SWEPT,
    LLM_REQUEST_TIME,
    track_latency,
    track_errors,
)

__all__ = [
    'TURN_PROCESSING_TIME',
    'ERROR_COUNT',
    'STAGE_PROCESSING_TIME',
    'STEERING_STRATEGY_FAILURES',
    'EXTRACTION_FAILURES',
    'AGENT_STATES_SWEPT',
    'LLM_REQUEST_TIME',
    'track_latency',
    'track_errors',
]
