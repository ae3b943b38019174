"""
core/__init__.py

Core orchestration modules.

This package contains the per-turn coordination logic:
- registries: domain, steering strategy and extractor registries
- plugins: base classes domain plugins implement
- stages: the ordered pipeline stages (decay, classification, extraction, steering, composition)
- pipeline: sequential stage runner
- orchestrator: load state, run the pipeline, save the result
- context: explicit construction and lifecycle of shared objects
"""
