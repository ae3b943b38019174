"""
shared/__init__.py

Shared models, errors and helpers used across the orchestrator.

- models: conversation state, domain definitions, agent state records
- errors: the error taxonomy raised by registries, stores and stages
- utils: identifiers, UTC clock and timestamp helpers
"""
