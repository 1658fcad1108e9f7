"""
Core infrastructure for the TagRouter engine.

This package exposes the event bus, the plugin contracts, the orchestration
engine and the configuration service.
"""

from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    ActionBinding,
    ActionContext,
    ActionPlugin,
    ActionResult,
    BaseActionPlugin,
    BaseClassificationPlugin,
    BaseEntityProvider,
    ClassificationContext,
    ClassificationOutput,
    ClassificationPlugin,
    Entity,
    EntityProvider,
    EventPayload,
    EventType,
    FetchOptions,
    FetchResult,
    HealthStatus,
)
from .engine import (
    DomainRegistration,
    DomainRegistrationError,
    EngineState,
    TagRouterEngine,
    resolve_classification,
)

__all__ = [
    "ActionBinding",
    "ActionContext",
    "ActionPlugin",
    "ActionResult",
    "BaseActionPlugin",
    "BaseClassificationPlugin",
    "BaseEntityProvider",
    "ClassificationContext",
    "ClassificationOutput",
    "ClassificationPlugin",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DomainRegistration",
    "DomainRegistrationError",
    "EngineState",
    "Entity",
    "EntityProvider",
    "EventBus",
    "EventPayload",
    "EventType",
    "FetchOptions",
    "FetchResult",
    "HealthStatus",
    "Subscription",
    "TagRouterEngine",
    "resolve_classification",
]
