"""
core/context.py

Application context: explicit construction and lifecycle of every shared object.

Nothing in the application is a module-level singleton. `AppContext` builds
the registries, stores, text generator, classifier, stages, pipeline,
orchestrator and sweeper from the configuration mapping, and the FastAPI
lifespan starts and shuts it down. Tests build their own context (usually
with a fake generator and a temporary database).

Plugins are declared in the `domains` configuration section:

    "domains": {
      "definitions": [{"id": "health", "name": "Health", ...}],
      "strategies": ["my_plugins.health:CheckInStrategy",
                     {"class": "my_plugins.health:GoalStrategy", "options": {"hours": 24}}],
      "extractors": ["my_plugins.health:HealthExtractor"]
    }

Strategy and extractor entries are `"module:Class"` import paths, optionally
with constructor options. Any failure to import or build a plugin is a fatal
`ConfigurationError`.

Every registered plugin gets the shared agent state store bound as
`agent_state`; plugin classes whose constructor takes an `agent_state`
argument receive it there.
"""

import importlib
import inspect
import logging
from typing import Any, Dict, Optional, Union

from core.classifier import ModeClassifier
from core.composer import ResponseComposer
from core.modes import build_mode_handlers
from core.orchestrator import ConversationOrchestrator
from core.pipeline import StagePipeline
from core.plugins import BaseExtractor, BaseSteeringStrategy, LLMExtractor
from core.registries import DomainRegistry, ExtractorRegistry, SteeringRegistry
from core.stages import (
    ClassificationStage,
    CompositionStage,
    DecayStage,
    ExtractionStage,
    SteeringStage,
)
from llm_cloud.generation import TextGenerator
from services.agent_state import AgentStateStore
from services.conversation_store import ConversationStore
from services.domain_storage import DomainStorage, StorageFactory
from services.state_sweeper import AgentStateSweeper
from shared.errors import ConfigurationError
from shared.models import DomainDefinition

logger = logging.getLogger(__name__)


def import_plugin_class(path: str) -> type:
    """
    Import a class from a `"package.module:ClassName"` path.

    Raises:
        ConfigurationError: If the path is malformed or the import fails.
    """
    module_name, _, class_name = path.partition(':')
    if not module_name or not class_name:
        raise ConfigurationError(f"Invalid plugin path '{path}', expected 'module:Class'")
    try:
        module = importlib.import_module(module_name)
        return getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot import plugin '{path}': {e}") from e


class AppContext:
    """
    Owns all long-lived objects of the application.

    Use `AppContext.from_config(CONFIG)` to build one; `start()` must be
    called from inside the running event loop and `shutdown()` when the
    application stops.
    """

    def __init__(self, config: Dict[str, Any], generator: Optional[TextGenerator] = None):
        self.config = config
        db_path = config['database']['path']

        self.domain_registry = DomainRegistry()
        self.steering_registry = SteeringRegistry()
        self.extractor_registry = ExtractorRegistry()

        agent_state_config = config.get('agent_state', {})
        self.agent_state = AgentStateStore(
            db_path, default_ttl_seconds=agent_state_config.get('default_ttl_seconds', 300)
        )
        self.conversation_store = ConversationStore(db_path)
        self.storage_factory = StorageFactory(db_path)
        self.domain_storages: Dict[str, DomainStorage] = {}

        self.generator = generator if generator is not None else TextGenerator(llm_config=config['llm'])
        self.classifier = ModeClassifier(self.generator, config['prompts']['classification'])

        composition_config = config.get('composition', {})
        self.composer = ResponseComposer(
            transition_style=composition_config.get('transition_style', 'phrase'),
            transition_phrases=composition_config.get('transition_phrases'),
            enable_deduplication=composition_config.get('enable_deduplication', True),
            max_response_length=composition_config.get('max_response_length', 4000),
        )
        self.mode_handlers = build_mode_handlers(config['prompts'])

        self.pipeline = StagePipeline(self._build_stages())
        self.orchestrator = ConversationOrchestrator(
            self.conversation_store,
            self.pipeline,
            message_limit=config.get('context', {}).get('message_limit', 10),
        )
        self.sweeper = AgentStateSweeper(
            self.agent_state,
            interval_seconds=agent_state_config.get('sweep_interval_seconds', 300),
        )

    @classmethod
    def from_config(cls, config: Dict[str, Any], generator: Optional[TextGenerator] = None) -> "AppContext":
        """Build a context and load the plugins declared in the configuration."""
        context = cls(config, generator=generator)
        context.load_plugins()
        return context

    def _build_stages(self) -> list:
        decay_config = self.config.get('decay', {})
        extraction_config = self.config.get('extraction', {})
        steering_config = self.config.get('steering', {})
        composition_config = self.config.get('composition', {})

        stages = [
            DecayStage(
                half_life_hours=decay_config.get('half_life_hours'),
                min_weight=decay_config.get('min_weight', 0.1),
                goal_expiry_days=decay_config.get('goal_expiry_days', 7),
            ),
            ClassificationStage(self.classifier),
        ]
        if extraction_config.get('enabled', True):
            stages.append(ExtractionStage(
                self.domain_registry,
                self.extractor_registry,
                storages=self.domain_storages,
                default_confidence_threshold=extraction_config.get('default_confidence_threshold', 0.5),
                agent_state=self.agent_state,
            ))
        if steering_config.get('enabled', True):
            stages.append(SteeringStage(
                self.steering_registry,
                max_hint_sets=steering_config.get('max_hint_sets', 3),
                max_suggestions=steering_config.get('max_suggestions', 3),
                context_merge_policy=steering_config.get('context_merge_policy', 'highest_priority_wins'),
            ))
        stages.append(CompositionStage(
            self.generator,
            self.composer,
            self.mode_handlers,
            max_modes_per_response=composition_config.get('max_modes_per_response', 3),
            secondary_confidence_threshold=composition_config.get('secondary_confidence_threshold', 0.6),
        ))
        return stages

    # --- Plugin registration ---

    def register_domain(self, domain: DomainDefinition) -> None:
        """
        Register a domain and create its storage backend.

        Storage is only created for domains with the extraction capability.

        Raises:
            DuplicateKeyError: If the domain id is already registered.
            UnsupportedStorageError: If the storage type is not implemented.
                The domain is not registered then.
        """
        storage = None
        if domain.capabilities.extraction:
            storage = self.storage_factory.create(domain.id, domain.config.storage)
        self.domain_registry.register(domain)
        if storage is not None:
            self.domain_storages[domain.id] = storage

    def _bind_agent_state(self, plugin) -> None:
        if plugin.agent_state is None:
            plugin.agent_state = self.agent_state

    def register_strategy(self, strategy: BaseSteeringStrategy) -> None:
        self._bind_agent_state(strategy)
        self.steering_registry.register(strategy)

    def register_extractor(self, extractor: BaseExtractor) -> None:
        self._bind_agent_state(extractor)
        self.extractor_registry.register(extractor)

    def _build_plugin(self, entry: Union[str, Dict[str, Any]], base: type) -> Any:
        if isinstance(entry, str):
            path, options = entry, {}
        else:
            path, options = entry.get('class', ''), dict(entry.get('options', {}))

        plugin_class = import_plugin_class(path)
        if not isinstance(plugin_class, type) or not issubclass(plugin_class, base):
            raise ConfigurationError(f"Plugin '{path}' is not a {base.__name__}")
        if issubclass(plugin_class, LLMExtractor):
            options.setdefault('generator', self.generator)
        if 'agent_state' in inspect.signature(plugin_class).parameters:
            options.setdefault('agent_state', self.agent_state)
        try:
            return plugin_class(**options)
        except TypeError as e:
            raise ConfigurationError(f"Cannot construct plugin '{path}': {e}") from e

    def load_plugins(self) -> None:
        """
        Register the domains, steering strategies and extractors declared in configuration.

        Raises:
            ConfigurationError: On any invalid declaration, import failure or
                unsupported storage type.
        """
        domains_config = self.config.get('domains', {})

        for definition in domains_config.get('definitions', []):
            try:
                domain = DomainDefinition.from_dict(definition)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid domain definition {definition!r}: {e}") from e
            self.register_domain(domain)

        for entry in domains_config.get('strategies', []):
            self.register_strategy(self._build_plugin(entry, BaseSteeringStrategy))

        for entry in domains_config.get('extractors', []):
            self.register_extractor(self._build_plugin(entry, BaseExtractor))

        logger.info(
            f"[AppContext] Plugins loaded: {len(self.domain_registry.get_all_domains())} domains, "
            f"{len(self.steering_registry)} strategies, "
            f"{len(self.extractor_registry.get_registered_domain_ids())} extractors"
        )

    # --- Lifecycle ---

    def start(self) -> None:
        """Apply domain storage retention and start background work. Must run inside the event loop."""
        for storage in self.domain_storages.values():
            apply_retention = getattr(storage, 'apply_retention', None)
            if apply_retention is not None:
                apply_retention()
        self.sweeper.start()
        logger.info("[AppContext] Started")

    def shutdown(self) -> None:
        """Stop background work and clear the registries. Safe to call twice."""
        self.sweeper.stop()
        self.domain_registry.clear()
        self.steering_registry.clear()
        self.extractor_registry.clear()
        self.domain_storages.clear()
        logger.info("[AppContext] Shut down")
