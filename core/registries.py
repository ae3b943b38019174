"""
core/registries.py

In-memory registries for domain plugins.

Three registries are populated at startup and then read on every turn:
- DomainRegistry: domain definitions, unique by id (duplicates are rejected)
- SteeringRegistry: steering strategies, keyed by strategy id (duplicates replace)
- ExtractorRegistry: one extractor per domain (duplicates replace)

Registries are plain objects owned by the application context; there is no
module-level instance. Registration happens during startup, before any turn
is processed, so no locking is needed for reads.
"""

import logging
from typing import Any, Dict, List, Optional

from core.plugins import BaseExtractor, BaseSteeringStrategy
from shared.errors import ConfigurationError, DuplicateKeyError
from shared.models import DomainDefinition

logger = logging.getLogger(__name__)

HIGH_PRIORITY_THRESHOLD = 0.8
MEDIUM_PRIORITY_THRESHOLD = 0.5


class DomainRegistry:
    """Registry of domain definitions keyed by domain id."""

    def __init__(self):
        self._domains: Dict[str, DomainDefinition] = {}

    def register(self, domain: DomainDefinition) -> None:
        """
        Register a domain definition.

        Args:
            domain (DomainDefinition): The domain to add.

        Raises:
            DuplicateKeyError: If a domain with the same id is already registered.
                The registry is left unchanged.
        """
        if domain.id in self._domains:
            raise DuplicateKeyError("Domain", domain.id)

        self._domains[domain.id] = domain
        logger.info(
            f"[DomainRegistry] Domain registered: {domain.id}",
            extra={'domain_id': domain.id, 'extra_fields': {'priority': domain.priority, 'enabled': domain.enabled}}
        )

    def unregister(self, domain_id: str) -> None:
        if self._domains.pop(domain_id, None) is not None:
            logger.info(f"[DomainRegistry] Domain unregistered: {domain_id}", extra={'domain_id': domain_id})

    def get_domain(self, domain_id: str) -> Optional[DomainDefinition]:
        return self._domains.get(domain_id)

    def has_domain(self, domain_id: str) -> bool:
        return domain_id in self._domains

    def get_all_domains(self) -> List[DomainDefinition]:
        return list(self._domains.values())

    def get_active_domains(self) -> List[DomainDefinition]:
        """Enabled domains, highest priority first; ties keep registration order."""
        active = [domain for domain in self._domains.values() if domain.enabled]
        return sorted(active, key=lambda domain: domain.priority, reverse=True)

    def clear(self) -> None:
        count = len(self._domains)
        self._domains.clear()
        logger.info(f"[DomainRegistry] Cleared {count} domains")

    def get_stats(self) -> Dict[str, Any]:
        domains = list(self._domains.values())
        enabled = sum(1 for domain in domains if domain.enabled)
        return {
            'total': len(domains),
            'enabled': enabled,
            'disabled': len(domains) - enabled,
            'by_capability': {
                'extraction': sum(1 for d in domains if d.capabilities.extraction),
                'steering': sum(1 for d in domains if d.capabilities.steering),
                'summarization': sum(1 for d in domains if d.capabilities.summarization),
            },
        }


class SteeringRegistry:
    """
    Registry of steering strategies keyed by strategy id.

    Registering an id twice replaces the earlier strategy and logs a warning,
    so a deployment can override a built-in strategy with its own.
    """

    def __init__(self):
        self._strategies: Dict[str, BaseSteeringStrategy] = {}

    def register(self, strategy: BaseSteeringStrategy) -> None:
        """
        Register a steering strategy.

        Raises:
            ConfigurationError: If the strategy has no id or its priority lies
                outside [0.0, 1.0].
        """
        if not strategy.strategy_id:
            raise ConfigurationError(f"Steering strategy {strategy.__class__.__name__} has no strategy_id")
        if not 0.0 <= strategy.priority <= 1.0:
            raise ConfigurationError(
                f"Steering strategy '{strategy.strategy_id}' priority {strategy.priority} is outside [0.0, 1.0]"
            )

        if strategy.strategy_id in self._strategies:
            logger.warning(
                f"[SteeringRegistry] Replacing existing steering strategy: {strategy.strategy_id}",
                extra={'strategy_id': strategy.strategy_id}
            )

        self._strategies[strategy.strategy_id] = strategy
        logger.info(
            f"[SteeringRegistry] Steering strategy registered: {strategy.strategy_id}",
            extra={
                'strategy_id': strategy.strategy_id,
                'extra_fields': {'priority': strategy.priority, 'domain_ids': sorted(strategy.domain_ids)}
            }
        )

    def unregister(self, strategy_id: str) -> None:
        if self._strategies.pop(strategy_id, None) is not None:
            logger.info(f"[SteeringRegistry] Steering strategy unregistered: {strategy_id}")

    def get_strategy(self, strategy_id: str) -> Optional[BaseSteeringStrategy]:
        return self._strategies.get(strategy_id)

    def has_strategy(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def get_all_strategies(self) -> List[BaseSteeringStrategy]:
        """All strategies, highest priority first."""
        return sorted(self._strategies.values(), key=lambda s: s.priority, reverse=True)

    def get_strategies_for_domain(self, domain_id: str) -> List[BaseSteeringStrategy]:
        """Strategies whose declared `domain_ids` contain exactly this domain id."""
        return [s for s in self.get_all_strategies() if domain_id in s.domain_ids]

    def clear(self) -> None:
        count = len(self._strategies)
        self._strategies.clear()
        logger.info(f"[SteeringRegistry] Cleared {count} steering strategies")

    def get_stats(self) -> Dict[str, Any]:
        strategies = self.get_all_strategies()
        return {
            'total': len(strategies),
            'by_priority': {
                'high': sum(1 for s in strategies if s.priority >= HIGH_PRIORITY_THRESHOLD),
                'medium': sum(
                    1 for s in strategies
                    if MEDIUM_PRIORITY_THRESHOLD <= s.priority < HIGH_PRIORITY_THRESHOLD
                ),
                'low': sum(1 for s in strategies if s.priority < MEDIUM_PRIORITY_THRESHOLD),
            },
            'strategies': [{'id': s.strategy_id, 'priority': s.priority} for s in strategies],
        }

    def __len__(self) -> int:
        return len(self._strategies)


class ExtractorRegistry:
    """Registry holding at most one extractor per domain id."""

    def __init__(self):
        self._extractors: Dict[str, BaseExtractor] = {}

    def register(self, extractor: BaseExtractor) -> None:
        if not extractor.domain_id:
            raise ConfigurationError(f"Extractor {extractor.__class__.__name__} has no domain_id")
        if extractor.domain_id in self._extractors:
            logger.warning(
                f"[ExtractorRegistry] Replacing existing extractor for domain: {extractor.domain_id}",
                extra={'domain_id': extractor.domain_id}
            )
        self._extractors[extractor.domain_id] = extractor
        logger.info(f"[ExtractorRegistry] Extractor registered: {extractor.domain_id}", extra={'domain_id': extractor.domain_id})

    def unregister(self, domain_id: str) -> None:
        if self._extractors.pop(domain_id, None) is not None:
            logger.info(f"[ExtractorRegistry] Extractor unregistered: {domain_id}")

    def get_extractor(self, domain_id: str) -> Optional[BaseExtractor]:
        return self._extractors.get(domain_id)

    def has_extractor(self, domain_id: str) -> bool:
        return domain_id in self._extractors

    def get_registered_domain_ids(self) -> List[str]:
        return list(self._extractors.keys())

    def clear(self) -> None:
        count = len(self._extractors)
        self._extractors.clear()
        logger.info(f"[ExtractorRegistry] Cleared {count} extractors")
