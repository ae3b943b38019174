"""
Core metrics and monitoring decorators for the conversation orchestrator.

This module defines Prometheus metrics and decorators for tracking:
- Turn processing time
- Per-stage processing time
- Error rates (stages, plugins, storage, generation)
- Steering strategy failures
- Agent state expiry sweeps
- External LLM latency

The decorators work on both plain functions and coroutine functions.
"""

import time
import inspect
import functools
import logging
from typing import Optional, Callable, Union
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# Turn metrics
TURN_PROCESSING_TIME = Histogram(
    'turn_processing_duration_seconds',
    'Time spent processing one user message end to end',
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, float("inf")]
)

# Error metrics
ERROR_COUNT = Counter(
    'error_total',
    'Total number of errors',
    ['type', 'location']  # type: e.g., 'stage', 'storage', 'generation'; location: specific component
)

# Stage metrics
STAGE_PROCESSING_TIME = Histogram(
    'stage_processing_duration_seconds',
    'Time spent in one pipeline stage',
    ['stage_name'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)

# Plugin metrics
STEERING_STRATEGY_FAILURES = Counter(
    'steering_strategy_failures_total',
    'Steering strategies that raised while generating hints',
    ['strategy_id']
)

EXTRACTION_FAILURES = Counter(
    'extraction_failures_total',
    'Extractors that raised while extracting',
    ['domain_id']
)

# Agent state metrics
AGENT_STATES_SWEPT = Counter(
    'agent_state_swept_total',
    'Expired agent state records deleted by the sweep'
)

# External API metrics
LLM_REQUEST_TIME = Histogram(
    'llm_request_duration_seconds',
    'Time spent waiting for LLM API',
    ['model'],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, float("inf")]
)


def _observe(metric: Histogram, labels: Optional[Callable], args: tuple, duration: float, func_name: str) -> None:
    if labels and args:
        # For instance methods, first arg is 'self'
        metric.labels(**labels(args[0])).observe(duration)
    else:
        metric.observe(duration)
    logger.debug(
        f"Function {func_name} execution time: {duration:.2f} seconds",
        extra={'extra_fields': {'duration': duration, 'function': func_name}}
    )


def track_latency(metric: Histogram, labels: Optional[Callable] = None) -> Callable:
    """
    A decorator factory that tracks the execution time of a function using a Prometheus Histogram.

    Args:
        metric (Histogram): The Prometheus Histogram to record the timing in
        labels (Callable, optional): Function that receives the first positional
            argument (``self`` for methods) and returns the metric labels dictionary

    Returns:
        Callable: The decorated function
    """
    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _observe(metric, labels, args, time.perf_counter() - start_time, func.__name__)
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _observe(metric, labels, args, time.perf_counter() - start_time, func.__name__)
        return wrapper
    return decorator


def _record_error(error_type: str, location: str, error: Exception) -> None:
    ERROR_COUNT.labels(type=error_type, location=location).inc()
    logger.error(
        f"Error in {location} ({error_type}): {str(error)}",
        extra={'extra_fields': {
            'error_type': error_type,
            'location': location,
            'error': str(error)
        }},
        exc_info=True
    )


def track_errors(error_type: str, location: Union[str, Callable]) -> Callable:
    """
    A decorator factory that tracks errors occurring in a function.

    Args:
        error_type (str): Type of error (e.g., 'stage', 'storage', 'generation')
        location (str | Callable): Where the error occurred, or a callable that
            receives ``self`` and returns it

    Returns:
        Callable: The decorated function

    Example:
        @track_errors('storage', 'conversation_store')
        def save_snapshot(self, state):
            ...
    """
    def resolve_location(args: tuple) -> str:
        if callable(location):
            return location(args[0]) if args else 'unknown'
        return location

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _record_error(error_type, resolve_location(args), e)
                    raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _record_error(error_type, resolve_location(args), e)
                raise  # Re-raise the exception after tracking
        return wrapper
    return decorator
