"""
api/domains.py

Read-only introspection of the registered plugins.

Endpoints:
  - GET /domains: Registered domain definitions and registry statistics.
  - GET /steering: Steering strategy statistics.
"""

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends

from api import get_app_context
from core.context import AppContext

router = APIRouter()


@router.get("/domains")
def list_domains(context: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    registry = context.domain_registry
    return {
        'domains': [asdict(domain) for domain in registry.get_all_domains()],
        'stats': registry.get_stats(),
    }


@router.get("/steering")
def steering_stats(context: AppContext = Depends(get_app_context)) -> Dict[str, Any]:
    return context.steering_registry.get_stats()
