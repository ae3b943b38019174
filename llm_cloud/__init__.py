"""Top-level package exports for llm_cloud.

This package holds the LLM infrastructure:
    • provider.py   – client configuration and provider routing
    • generation.py – async text generation used by classification, extraction and composition
"""

from .generation import TextGenerator

__all__ = [
    "TextGenerator",
]
