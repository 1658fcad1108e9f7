"""
Expose engine pipeline metrics via Prometheus.

The exporter subscribes to every event on the engine bus and turns the
entity and action lifecycle into counters so operators can watch routing
without digging through logs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from ..core.bus import EventBus, Subscription
from ..core.contracts import WILDCARD, EventPayload, EventType

logger = logging.getLogger(__name__)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class EngineMetrics:
    """Bus subscriber that maintains Prometheus counters for the pipeline."""

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        namespace: str = "tagrouter",
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._subscription: Subscription | None = None
        self._bus: EventBus | None = None
        self._entities_received = Counter(
            "entities_received",
            "Entities received from providers.",
            ["domain"],
            namespace=namespace,
            registry=self._registry,
        )
        self._entities_classified = Counter(
            "entities_classified",
            "Entities resolved to a winning classification.",
            ["domain", "type"],
            namespace=namespace,
            registry=self._registry,
        )
        self._entities_unclassified = Counter(
            "entities_unclassified",
            "Entities no classifier had an opinion on.",
            ["domain"],
            namespace=namespace,
            registry=self._registry,
        )
        self._entities_processed = Counter(
            "entities_processed",
            "Entities that completed the pipeline.",
            ["domain"],
            namespace=namespace,
            registry=self._registry,
        )
        self._entity_errors = Counter(
            "entity_errors",
            "Unexpected per-entity pipeline failures.",
            ["domain"],
            namespace=namespace,
            registry=self._registry,
        )
        self._actions_executed = Counter(
            "actions_executed",
            "Action invocations by outcome.",
            ["domain", "action", "outcome"],
            namespace=namespace,
            registry=self._registry,
        )
        self._engine_errors = Counter(
            "engine_errors",
            "Provider failures during initialize or fetch.",
            ["domain", "stage"],
            namespace=namespace,
            registry=self._registry,
        )
        self._last_duration_ms = Gauge(
            "last_processing_duration_ms",
            "Pipeline duration of the most recently processed entity.",
            ["domain"],
            namespace=namespace,
            registry=self._registry,
        )
        self._handlers: dict[str, Callable[[EventPayload, str], None]] = {
            EventType.MESSAGE_RECEIVED.value: self._on_received,
            EventType.MESSAGE_CLASSIFIED.value: self._on_classified,
            EventType.MESSAGE_UNCLASSIFIED.value: self._on_unclassified,
            EventType.MESSAGE_PROCESSED.value: self._on_processed,
            EventType.MESSAGE_ERROR.value: self._on_entity_error,
            EventType.MESSAGE_ACTION_EXECUTED.value: self._on_action_executed,
            EventType.ENGINE_ERROR.value: self._on_engine_error,
        }

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def attach(self, bus: EventBus) -> None:
        """Start counting events published on ``bus``."""
        if self._subscription is not None:
            raise RuntimeError("EngineMetrics is already attached to a bus.")
        self._bus = bus
        self._subscription = bus.subscribe(WILDCARD, self._handle_event)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._bus = None

    def serve(self, port: int = 9093, addr: str = "127.0.0.1") -> None:
        if self._server is None:
            self._server = self._server_factory(port, addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", addr, port)

    def shutdown(self) -> None:
        self.detach()
        server = self._server
        # prometheus_client >= 0.17 returns (server, thread).
        if isinstance(server, tuple) and server:
            server = server[0]
        stop = getattr(server, "shutdown", None)
        if callable(stop):
            stop()
        self._server = None

    def _handle_event(self, event: EventPayload) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            return
        data = event.data or {}
        handler(event, str(data.get("domain_id") or "unknown"))

    def _on_received(self, event: EventPayload, domain: str) -> None:
        self._entities_received.labels(domain=domain).inc()

    def _on_classified(self, event: EventPayload, domain: str) -> None:
        kind = str((event.data or {}).get("type") or "unknown")
        self._entities_classified.labels(domain=domain, type=kind).inc()

    def _on_unclassified(self, event: EventPayload, domain: str) -> None:
        self._entities_unclassified.labels(domain=domain).inc()

    def _on_processed(self, event: EventPayload, domain: str) -> None:
        self._entities_processed.labels(domain=domain).inc()
        duration = (event.data or {}).get("duration_ms")
        if isinstance(duration, int | float):
            self._last_duration_ms.labels(domain=domain).set(duration)

    def _on_entity_error(self, event: EventPayload, domain: str) -> None:
        self._entity_errors.labels(domain=domain).inc()

    def _on_action_executed(self, event: EventPayload, domain: str) -> None:
        data = event.data or {}
        outcome = "success" if data.get("success") else "failure"
        action = str(data.get("action_id") or "unknown")
        self._actions_executed.labels(domain=domain, action=action, outcome=outcome).inc()

    def _on_engine_error(self, event: EventPayload, domain: str) -> None:
        stage = str((event.data or {}).get("stage") or "unknown")
        self._engine_errors.labels(domain=domain, stage=stage).inc()


__all__ = ["EngineMetrics"]
