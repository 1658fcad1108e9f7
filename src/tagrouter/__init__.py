"""
TagRouter - domain-agnostic classification and action routing engine.

Entities pulled from pluggable providers are classified by independent
plugins, resolved to a single winner by confidence, and dispatched to the
actions bound to the winning type.
"""

__version__ = "0.1.0"

from tagrouter.core import (
    ActionBinding,
    ActionContext,
    ActionResult,
    BaseActionPlugin,
    BaseClassificationPlugin,
    BaseEntityProvider,
    ClassificationContext,
    ClassificationOutput,
    DomainRegistration,
    Entity,
    EventBus,
    EventPayload,
    EventType,
    FetchOptions,
    FetchResult,
    TagRouterEngine,
)
from tagrouter.plugins import PluginLoader, RuleDefinition, compile_rule

__all__ = [
    "ActionBinding",
    "ActionContext",
    "ActionResult",
    "BaseActionPlugin",
    "BaseClassificationPlugin",
    "BaseEntityProvider",
    "ClassificationContext",
    "ClassificationOutput",
    "DomainRegistration",
    "Entity",
    "EventBus",
    "EventPayload",
    "EventType",
    "FetchOptions",
    "FetchResult",
    "PluginLoader",
    "RuleDefinition",
    "TagRouterEngine",
    "compile_rule",
]
