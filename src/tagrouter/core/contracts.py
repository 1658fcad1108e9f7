"""
Contracts and payload schemas for the TagRouter engine.

Entities, classification outputs, action results and bus events are
immutable Pydantic models. Providers, classifiers and actions are described
as structural protocols so plugins can be plain objects; the optional base
classes at the bottom of this module give authors sensible defaults.
"""

from __future__ import annotations

import abc
import datetime as dt
import inspect
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

WILDCARD = "*"


class EventType(StrEnum):
    """Event types emitted by the engine."""

    ENGINE_STARTING = "engine:starting"
    ENGINE_STARTED = "engine:started"
    ENGINE_STOPPING = "engine:stopping"
    ENGINE_STOPPED = "engine:stopped"
    ENGINE_ERROR = "engine:error"
    MESSAGE_RECEIVED = "message:received"
    MESSAGE_CLASSIFYING = "message:classifying"
    MESSAGE_CLASSIFIED = "message:classified"
    MESSAGE_UNCLASSIFIED = "message:unclassified"
    MESSAGE_ACTION_EXECUTING = "message:actionExecuting"
    MESSAGE_ACTION_EXECUTED = "message:actionExecuted"
    MESSAGE_ACTION_ERROR = "message:actionError"
    MESSAGE_PROCESSED = "message:processed"
    MESSAGE_ERROR = "message:error"


def _freeze(value: Any) -> Any:
    """Rebuild nested containers as read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, set | frozenset):
        return frozenset(_freeze(item) for item in value)
    return value


class Entity(BaseModel):
    """
    Immutable record flowing through the pipeline.

    Numeric ids are accepted and stored as strings. `metadata` is frozen on
    validation: nested mappings become read-only proxies and lists become
    tuples, so no stage can change what the next one sees.
    """

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    id: str
    content: str = Field(default="", description="Primary textual payload.")
    metadata: Mapping[str, Any] = Field(
        default_factory=dict, description="Opaque domain-specific metadata."
    )
    trace_id: str | None = Field(
        default=None, description="Correlation id assigned by the engine on receipt."
    )

    @field_validator("metadata", mode="after")
    @classmethod
    def _read_only_metadata(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return _freeze(value)


class ClassificationOutput(BaseModel):
    """Decision produced by a classifier for one entity."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(min_length=1, description="Routing key used by action bindings.")
    confidence: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Absent means certain (hard rule); treated as 1.0.",
    )
    tags: tuple[str, ...] | None = Field(
        default=None, description="Informational labels, never used for routing."
    )

    @property
    def effective_confidence(self) -> float:
        return effective_confidence(self)


class ActionBinding(BaseModel):
    """Interest of an action in one classification type."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    min_confidence: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        validation_alias=AliasChoices("min_confidence", "minConfidence"),
    )


class ActionResult(BaseModel):
    """Outcome reported by an action after execution."""

    model_config = ConfigDict(frozen=True)

    action_id: str
    success: bool
    error: str | None = None
    data: dict[str, Any] | None = None


class FetchOptions(BaseModel):
    """Options passed to `EntityProvider.get_entities`."""

    model_config = ConfigDict(frozen=True, extra="allow")

    limit: int | None = Field(default=None, gt=0)
    since: Any = Field(
        default=None, description="Opaque cursor hint handed back to the provider."
    )


class FetchResult(BaseModel):
    """
    Batch returned by a provider.

    Entities are kept as returned; the engine validates each one on its own
    so a malformed record cannot drop its siblings.
    """

    model_config = ConfigDict(frozen=True)

    entities: tuple[Any, ...] = ()
    cursor: Any = Field(default=None, description="Opaque cursor, stored and passed back.")
    has_more: bool = Field(
        default=False, validation_alias=AliasChoices("has_more", "hasMore")
    )


class EventPayload(BaseModel):
    """Observability record published on the engine bus."""

    model_config = ConfigDict(frozen=True)

    type: str
    timestamp: str = Field(
        default_factory=lambda: dt.datetime.now(tz=dt.UTC).isoformat(),
        description="ISO-8601 UTC timestamp.",
    )
    trace_id: str | None = None
    data: dict[str, Any] | None = None


class HealthStatus(BaseModel):
    """Structured health report for a domain provider."""

    model_config = ConfigDict(frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


def create_event(
    event_type: str,
    data: Mapping[str, Any] | None = None,
    trace_id: str | None = None,
) -> EventPayload:
    """Build an event stamped with the current time."""
    return EventPayload(
        type=str(event_type),
        trace_id=trace_id,
        data=dict(data) if data is not None else None,
    )


def effective_confidence(output: ClassificationOutput) -> float:
    """Return the output's confidence, treating an absent value as certain."""
    return 1.0 if output.confidence is None else output.confidence


def coerce_binding(binding: ActionBinding | Mapping[str, Any] | None) -> ActionBinding:
    if isinstance(binding, ActionBinding):
        return binding
    if binding is None:
        return ActionBinding()
    return ActionBinding.model_validate(dict(binding))


def should_action_execute(action: ActionPlugin, classification: ClassificationOutput) -> bool:
    """
    Decide whether an action fires for the winning classification.

    The type must be bound and the effective confidence must reach the
    binding's floor (inclusive; an absent floor is 0.0).
    """
    bindings = action.bindings
    if classification.type not in bindings:
        return False
    binding = coerce_binding(bindings[classification.type])
    floor = 0.0 if binding.min_confidence is None else binding.min_confidence
    return effective_confidence(classification) >= floor


@dataclass(frozen=True)
class ClassificationContext:
    """Read-only context handed to every `classify` call."""

    config: Mapping[str, Any]
    logger: Any
    trace_id: str


@dataclass(frozen=True)
class ActionContext:
    """Read-only context handed to every `handle` call."""

    entity: Entity
    classification: ClassificationOutput
    config: Mapping[str, Any]
    logger: Any
    trace_id: str

    @property
    def message(self) -> Entity:
        return self.entity


@runtime_checkable
class EntityProvider(Protocol):
    """
    Pull-based source of entities.

    `initialize`, `shutdown` and `is_healthy` are optional hooks; the engine
    looks them up with `getattr` and calls them when present. Any method may
    be synchronous or a coroutine function.
    """

    id: str

    def get_entities(
        self, options: FetchOptions
    ) -> FetchResult | Mapping[str, Any] | Awaitable[FetchResult | Mapping[str, Any]]: ...


@runtime_checkable
class ClassificationPlugin(Protocol):
    id: str

    def classify(
        self, entity: Entity, context: ClassificationContext
    ) -> ClassificationOutput | None | Awaitable[ClassificationOutput | None]: ...


@runtime_checkable
class ActionPlugin(Protocol):
    id: str
    bindings: Mapping[str, ActionBinding | Mapping[str, Any] | None]

    def handle(self, context: ActionContext) -> ActionResult | Awaitable[ActionResult]: ...


def is_classification_plugin(obj: object) -> bool:
    """Structural check used at the dynamic-loading boundary."""
    if inspect.isclass(obj) or inspect.ismodule(obj):
        return False
    return isinstance(getattr(obj, "id", None), str) and callable(getattr(obj, "classify", None))


def is_action_plugin(obj: object) -> bool:
    """Structural check used at the dynamic-loading boundary."""
    if inspect.isclass(obj) or inspect.ismodule(obj):
        return False
    return (
        isinstance(getattr(obj, "id", None), str)
        and isinstance(getattr(obj, "bindings", None), Mapping)
        and callable(getattr(obj, "handle", None))
    )


class BaseEntityProvider(abc.ABC):
    """Convenience base for providers with no-op lifecycle hooks."""

    id: str
    name: str = ""
    description: str | None = None

    async def initialize(self) -> None:
        return None

    @abc.abstractmethod
    async def get_entities(self, options: FetchOptions) -> FetchResult:
        """Return the next batch of entities."""

    async def shutdown(self) -> None:
        return None

    async def is_healthy(self) -> bool:
        return True


class BaseClassificationPlugin(abc.ABC):
    id: str
    name: str | None = None
    description: str | None = None

    @abc.abstractmethod
    async def classify(
        self, entity: Entity, context: ClassificationContext
    ) -> ClassificationOutput | None:
        """Return a classification or `None` for no opinion."""


class BaseActionPlugin(abc.ABC):
    id: str
    name: str | None = None
    description: str | None = None
    bindings: Mapping[str, ActionBinding] = {}

    @abc.abstractmethod
    async def handle(self, context: ActionContext) -> ActionResult:
        """Perform the side effect for the winning classification."""

    def success(self, **data: Any) -> ActionResult:
        return ActionResult(action_id=self.id, success=True, data=data or None)

    def failure(self, error: str, **data: Any) -> ActionResult:
        return ActionResult(action_id=self.id, success=False, error=error, data=data or None)


__all__ = [
    "WILDCARD",
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
    "Entity",
    "EntityProvider",
    "EventPayload",
    "EventType",
    "FetchOptions",
    "FetchResult",
    "HealthStatus",
    "coerce_binding",
    "create_event",
    "effective_confidence",
    "is_action_plugin",
    "is_classification_plugin",
    "should_action_execute",
]
