"""
Orchestration engine for TagRouter domains.

The engine owns the domain registry, the polling loop and the per-entity
pipeline:

1. The entity is received and stamped with a trace id.
2. Every classifier of the domain runs, in registration order.
3. The highest-confidence result wins; ties keep the first registered.
4. Every action whose bindings match the winner runs, in registration order.

Each stage is published on the engine's `EventBus`. Plugin and provider
failures are isolated: the only error that reaches the caller is a provider
`initialize` failure during `start()`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any, TypeVar

from .bus import EventBus
from .contracts import (
    ActionContext,
    ActionPlugin,
    ActionResult,
    ClassificationContext,
    ClassificationOutput,
    ClassificationPlugin,
    Entity,
    EntityProvider,
    EventType,
    FetchOptions,
    FetchResult,
    HealthStatus,
    create_event,
    effective_confidence,
    should_action_execute,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLLING_INTERVAL_MS = 30_000
DEFAULT_BATCH_SIZE = 10


class EngineState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class DomainRegistrationError(ValueError):
    """Raised when a domain id is already registered."""


@dataclass(frozen=True)
class DomainRegistration:
    """One provider plus its classifiers and actions, registered under one id."""

    id: str
    name: str
    provider: EntityProvider
    classifiers: Sequence[ClassificationPlugin] = ()
    actions: Sequence[ActionPlugin] = ()
    config: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "classifiers", tuple(self.classifiers))
        object.__setattr__(self, "actions", tuple(self.actions))
        object.__setattr__(self, "config", MappingProxyType(dict(self.config or {})))


@dataclass(frozen=True)
class ClassifierVerdict:
    """A non-null classifier output tagged with the classifier that produced it."""

    classifier_id: str
    output: ClassificationOutput

    @property
    def confidence(self) -> float:
        return effective_confidence(self.output)


def resolve_classification(verdicts: Iterable[ClassifierVerdict]) -> ClassifierVerdict | None:
    """
    Pick the verdict with the highest effective confidence.

    Verdicts are expected in classifier registration order. Only a strictly
    greater confidence replaces the current winner, so the earliest verdict
    wins a tie.
    """
    winner: ClassifierVerdict | None = None
    best = 0.0
    for verdict in verdicts:
        confidence = verdict.confidence
        if winner is None or confidence > best:
            winner = verdict
            best = confidence
    return winner


class PluginLogger(logging.LoggerAdapter):
    """
    Logger handed to plugins through their context.

    Messages are prefixed with ``[domain:plugin]`` and every record carries
    ``trace_id``, ``domain_id`` and ``plugin_id`` extras. Structured fields may
    be passed with the ``data`` keyword.
    """

    def __init__(
        self,
        base: logging.Logger | logging.LoggerAdapter,
        domain_id: str,
        plugin_id: str,
        trace_id: str,
    ) -> None:
        super().__init__(
            base, {"domain_id": domain_id, "plugin_id": plugin_id, "trace_id": trace_id}
        )
        self.prefix = f"[{domain_id}:{plugin_id}]"

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        data = kwargs.pop("data", None)
        extra = {**self.extra, **(kwargs.get("extra") or {})}
        suffix = f" (trace_id={extra['trace_id']})"
        if data:
            extra["data"] = dict(data)
            suffix = f" {dict(data)}{suffix}"
        kwargs["extra"] = extra
        return f"{self.prefix} {msg}{suffix}", kwargs

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        # Plugins may call ``info(message, data)`` with the data positionally.
        if "data" not in kwargs and len(args) == 1 and isinstance(args[0], Mapping):
            kwargs["data"] = args[0]
            args = ()
        super().log(level, msg, *args, **kwargs)

    def warn(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.warning(msg, *args, **kwargs)


def default_trace_id() -> str:
    return f"tr_{uuid.uuid4().hex[:16]}"


async def _maybe_await(value: T | Any) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _raw_entity_id(raw: Any) -> str | None:
    if isinstance(raw, Mapping):
        value = raw.get("id")
    else:
        value = getattr(raw, "id", None)
    return None if value is None else str(value)


def _coerce_entity(raw: Any) -> Entity:
    if isinstance(raw, Entity):
        return raw
    if isinstance(raw, Mapping):
        return Entity.model_validate(dict(raw))
    return Entity.model_validate(raw, from_attributes=True)


def _coerce_output(raw: Any) -> ClassificationOutput | None:
    if raw is None or isinstance(raw, ClassificationOutput):
        return raw
    if isinstance(raw, Mapping):
        return ClassificationOutput.model_validate(dict(raw))
    return ClassificationOutput.model_validate(raw, from_attributes=True)


def _coerce_result(action_id: str, raw: Any) -> ActionResult:
    if isinstance(raw, ActionResult):
        return raw
    if raw is None:
        return ActionResult(action_id=action_id, success=True)
    if isinstance(raw, Mapping):
        data = dict(raw)
        data.setdefault("action_id", action_id)
        return ActionResult.model_validate(data)
    return ActionResult.model_validate(raw, from_attributes=True)


class TagRouterEngine:
    """Poll registered domains and route their entities to actions."""

    def __init__(
        self,
        *,
        polling_interval_ms: float = DEFAULT_POLLING_INTERVAL_MS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        bus: EventBus | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        trace_id_factory: Callable[[], str] | None = None,
    ) -> None:
        if polling_interval_ms <= 0:
            raise ValueError("polling_interval_ms must be positive")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.bus = bus or EventBus()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._polling_interval_ms = polling_interval_ms
        self._batch_size = batch_size
        self._trace_id_factory = trace_id_factory or default_trace_id
        self._domains: dict[str, DomainRegistration] = {}
        self._cursors: dict[str, Any] = {}
        self._state = EngineState.STOPPED
        self._poll_task: asyncio.Task[None] | None = None
        self._stop_requested = asyncio.Event()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    @property
    def polling_interval_ms(self) -> float:
        return self._polling_interval_ms

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def domains(self) -> Mapping[str, DomainRegistration]:
        return MappingProxyType(self._domains)

    def register_domain(self, domain: DomainRegistration) -> None:
        """
        Add a domain to the registry.

        Registration is only allowed while the engine is stopped so every
        provider goes through `initialize`/`shutdown` exactly once per run.
        """
        self._ensure_stopped("register")
        if domain.id in self._domains:
            raise DomainRegistrationError(f"Domain already registered: {domain.id}")
        self._domains[domain.id] = domain
        self.logger.info(
            "Registered domain %s (%s) with %d classifier(s) and %d action(s)",
            domain.id,
            domain.name,
            len(domain.classifiers),
            len(domain.actions),
        )

    def unregister_domain(self, domain_id: str) -> bool:
        """Remove a domain; returns False when the id was not registered."""
        self._ensure_stopped("unregister")
        if self._domains.pop(domain_id, None) is None:
            return False
        self._cursors.pop(domain_id, None)
        self.logger.info("Unregistered domain %s", domain_id)
        return True

    async def start(self) -> None:
        """Initialize providers, run one poll and schedule the recurring loop."""
        if self._state is not EngineState.STOPPED:
            self.logger.warning("Engine start requested while %s; ignoring.", self._state)
            return
        self._state = EngineState.STARTING
        self._emit(EventType.ENGINE_STARTING, {"domains": list(self._domains)})
        self.logger.info("Engine starting with %d domain(s).", len(self._domains))

        initialized: list[DomainRegistration] = []
        for domain in list(self._domains.values()):
            try:
                hook = getattr(domain.provider, "initialize", None)
                if callable(hook):
                    await _maybe_await(hook())
            except Exception as exc:
                self.logger.error(
                    "Provider initialization failed for domain %s: %s", domain.id, _describe(exc)
                )
                self._emit(
                    EventType.ENGINE_ERROR,
                    {"domain_id": domain.id, "stage": "initialize", "error": _describe(exc)},
                )
                await self._shutdown_providers(initialized)
                self._state = EngineState.STOPPED
                raise
            initialized.append(domain)
            self.logger.debug("Provider for domain %s initialized", domain.id)

        self._state = EngineState.RUNNING
        self._stop_requested.clear()
        await self.poll_once()
        if self._state is not EngineState.RUNNING:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name="tagrouter-poll")
        self._emit(
            EventType.ENGINE_STARTED,
            {"domains": list(self._domains), "polling_interval_ms": self._polling_interval_ms},
        )
        self.logger.info(
            "Engine started: %d domain(s), polling every %sms",
            len(self._domains),
            self._polling_interval_ms,
        )

    async def stop(self) -> None:
        """Cancel the recurring poll and shut providers down."""
        if self._state is not EngineState.RUNNING:
            self.logger.debug("Engine stop requested while %s; ignoring.", self._state)
            return
        self._state = EngineState.STOPPING
        self._emit(EventType.ENGINE_STOPPING)
        self.logger.info("Engine stopping...")
        self._stop_requested.set()
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            # The loop exits at its next wait; an in-flight cycle completes first.
            await task
        await self._shutdown_providers(list(self._domains.values()))
        self._state = EngineState.STOPPED
        self._emit(EventType.ENGINE_STOPPED)
        self.logger.info("Engine stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Ask every provider that exposes `is_healthy` for its status."""
        reports: dict[str, HealthStatus] = {}
        for domain in list(self._domains.values()):
            hook = getattr(domain.provider, "is_healthy", None)
            if not callable(hook):
                reports[domain.id] = HealthStatus(status="healthy", details={"reported": False})
                continue
            try:
                healthy = bool(await _maybe_await(hook()))
            except Exception as exc:
                self.logger.warning("Health check failed for domain %s: %s", domain.id, exc)
                reports[domain.id] = HealthStatus(status="error", details={"error": _describe(exc)})
                continue
            reports[domain.id] = HealthStatus(
                status="healthy" if healthy else "degraded", details={"reported": True}
            )
        return reports

    @staticmethod
    def overall_status(reports: Mapping[str, HealthStatus]) -> str:
        statuses = {report.status for report in reports.values()}
        if "error" in statuses:
            return "error"
        if "degraded" in statuses:
            return "degraded"
        return "healthy"

    async def poll_once(self) -> None:
        """Run one poll cycle over a snapshot of the registered domains."""
        for domain in list(self._domains.values()):
            try:
                await self._poll_domain(domain)
            except Exception as exc:
                self.logger.error("Polling domain %s failed: %s", domain.id, _describe(exc))
                self._emit(
                    EventType.ENGINE_ERROR,
                    {"domain_id": domain.id, "stage": "fetch", "error": _describe(exc)},
                )

    async def process_entity(self, domain: DomainRegistration, raw_entity: Any) -> None:
        """Run one entity through classify, resolve and dispatch."""
        trace_id = self._trace_id_factory()
        started = time.monotonic()
        entity_id = _raw_entity_id(raw_entity)
        base = {"domain_id": domain.id, "entity_id": entity_id}

        self._emit(EventType.MESSAGE_RECEIVED, base, trace_id)
        try:
            entity = _coerce_entity(raw_entity).model_copy(update={"trace_id": trace_id})
            self._emit(
                EventType.MESSAGE_CLASSIFYING,
                {**base, "classifiers": [c.id for c in domain.classifiers]},
                trace_id,
            )
            verdicts = await self._run_classifiers(domain, entity, trace_id)
            winner = resolve_classification(verdicts)

            executed = 0
            if winner is None:
                self._emit(EventType.MESSAGE_UNCLASSIFIED, base, trace_id)
                self.logger.debug(
                    "Entity %s in domain %s unclassified (trace_id=%s)",
                    entity.id,
                    domain.id,
                    trace_id,
                )
            else:
                output = winner.output
                self._emit(
                    EventType.MESSAGE_CLASSIFIED,
                    {
                        **base,
                        "type": output.type,
                        "confidence": winner.confidence,
                        "tags": list(output.tags) if output.tags is not None else None,
                        "classifier_id": winner.classifier_id,
                        "candidates": len(verdicts),
                    },
                    trace_id,
                )
                executed = await self._dispatch_actions(domain, entity, output, trace_id)

            duration_ms = (time.monotonic() - started) * 1000
            self._emit(
                EventType.MESSAGE_PROCESSED,
                {
                    **base,
                    "type": winner.output.type if winner else None,
                    "classified": winner is not None,
                    "actions_executed": executed,
                    "duration_ms": duration_ms,
                },
                trace_id,
            )
            self.logger.debug(
                "Entity %s processed in %.1fms (trace_id=%s)", entity_id, duration_ms, trace_id
            )
        except Exception as exc:
            self.logger.error(
                "Processing entity %s in domain %s failed (trace_id=%s): %s",
                entity_id,
                domain.id,
                trace_id,
                _describe(exc),
                exc_info=True,
            )
            self._emit(EventType.MESSAGE_ERROR, {**base, "error": _describe(exc)}, trace_id)

    async def _poll_loop(self) -> None:
        interval = self._polling_interval_ms / 1000
        try:
            while self._state is EngineState.RUNNING:
                try:
                    await asyncio.wait_for(self._stop_requested.wait(), timeout=interval)
                except TimeoutError:
                    await self.poll_once()
                else:
                    break
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    async def _poll_domain(self, domain: DomainRegistration) -> None:
        options = FetchOptions(limit=self._batch_size, since=self._cursors.get(domain.id))
        raw = await _maybe_await(domain.provider.get_entities(options))
        result = raw if isinstance(raw, FetchResult) else FetchResult.model_validate(raw)
        # Entities are validated one by one in process_entity; the cursor
        # advances even when some of them turn out to be malformed.
        if result.cursor is not None:
            self._cursors[domain.id] = result.cursor
        if not result.entities:
            return
        self.logger.debug(
            "Fetched %d entit%s for domain %s (has_more=%s)",
            len(result.entities),
            "y" if len(result.entities) == 1 else "ies",
            domain.id,
            result.has_more,
        )
        for entity in result.entities:
            await self.process_entity(domain, entity)

    async def _run_classifiers(
        self, domain: DomainRegistration, entity: Entity, trace_id: str
    ) -> list[ClassifierVerdict]:
        verdicts: list[ClassifierVerdict] = []
        for classifier in domain.classifiers:
            context = ClassificationContext(
                config=domain.config,
                logger=self._plugin_logger(domain, classifier.id, trace_id),
                trace_id=trace_id,
            )
            try:
                output = _coerce_output(await _maybe_await(classifier.classify(entity, context)))
            except Exception as exc:
                self.logger.error(
                    "Classifier %s failed for entity %s in domain %s: %s",
                    classifier.id,
                    entity.id,
                    domain.id,
                    _describe(exc),
                )
                continue
            if output is not None:
                verdicts.append(ClassifierVerdict(classifier_id=classifier.id, output=output))
        return verdicts

    async def _dispatch_actions(
        self,
        domain: DomainRegistration,
        entity: Entity,
        classification: ClassificationOutput,
        trace_id: str,
    ) -> int:
        executed = 0
        base = {"domain_id": domain.id, "entity_id": entity.id}
        for action in domain.actions:
            try:
                matches = should_action_execute(action, classification)
            except Exception as exc:
                self.logger.error(
                    "Action %s has invalid bindings in domain %s: %s",
                    action.id,
                    domain.id,
                    _describe(exc),
                )
                continue
            if not matches:
                continue
            executed += 1
            self._emit(
                EventType.MESSAGE_ACTION_EXECUTING,
                {**base, "action_id": action.id, "type": classification.type},
                trace_id,
            )
            result = await self._invoke_action(domain, action, entity, classification, trace_id)
            self._emit(
                EventType.MESSAGE_ACTION_EXECUTED,
                {
                    **base,
                    "action_id": action.id,
                    "type": classification.type,
                    "success": result.success,
                    "error": result.error,
                    "data": result.data,
                },
                trace_id,
            )
            if not result.success:
                self.logger.warning(
                    "Action %s failed for entity %s in domain %s: %s",
                    action.id,
                    entity.id,
                    domain.id,
                    result.error,
                )
        return executed

    async def _invoke_action(
        self,
        domain: DomainRegistration,
        action: ActionPlugin,
        entity: Entity,
        classification: ClassificationOutput,
        trace_id: str,
    ) -> ActionResult:
        context = ActionContext(
            entity=entity,
            classification=classification,
            config=domain.config,
            logger=self._plugin_logger(domain, action.id, trace_id),
            trace_id=trace_id,
        )
        try:
            return _coerce_result(action.id, await _maybe_await(action.handle(context)))
        except Exception as exc:
            self.logger.error(
                "Action %s raised for entity %s in domain %s: %s",
                action.id,
                entity.id,
                domain.id,
                _describe(exc),
            )
            self._emit(
                EventType.MESSAGE_ACTION_ERROR,
                {
                    "domain_id": domain.id,
                    "entity_id": entity.id,
                    "action_id": action.id,
                    "error": _describe(exc),
                },
                trace_id,
            )
            return ActionResult(action_id=action.id, success=False, error=_describe(exc))

    async def _shutdown_providers(self, domains: Iterable[DomainRegistration]) -> None:
        for domain in domains:
            hook = getattr(domain.provider, "shutdown", None)
            if not callable(hook):
                continue
            try:
                await _maybe_await(hook())
            except Exception as exc:
                self.logger.error(
                    "Provider shutdown failed for domain %s: %s", domain.id, _describe(exc)
                )

    def _plugin_logger(
        self, domain: DomainRegistration, plugin_id: str, trace_id: str
    ) -> PluginLogger:
        return PluginLogger(self.logger, domain.id, plugin_id, trace_id)

    def _emit(
        self,
        event_type: EventType,
        data: Mapping[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> None:
        self.bus.emit(create_event(event_type, data, trace_id))

    def _ensure_stopped(self, operation: str) -> None:
        if self._state is not EngineState.STOPPED:
            raise RuntimeError(f"Cannot {operation} domains while the engine is {self._state}.")


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_POLLING_INTERVAL_MS",
    "ClassifierVerdict",
    "DomainRegistration",
    "DomainRegistrationError",
    "EngineState",
    "PluginLogger",
    "TagRouterEngine",
    "default_trace_id",
    "resolve_classification",
]
