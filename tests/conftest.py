from __future__ import annotations

import textwrap
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from tagrouter.core.bus import EventBus
from tagrouter.core.config import ConfigService
from tagrouter.core.contracts import (
    ActionContext,
    ActionResult,
    ClassificationContext,
    ClassificationOutput,
    Entity,
    EventPayload,
    FetchOptions,
    FetchResult,
)


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


class StaticProvider:
    """Provider that hands out queued batches and records every call."""

    def __init__(self, provider_id: str = "static", batches: list[list[Any]] | None = None) -> None:
        self.id = provider_id
        self.batches = list(batches or [])
        self.calls: list[FetchOptions] = []
        self.initialize_calls = 0
        self.shutdown_calls = 0
        self.cursor: Any = None
        self.fail_fetch: Exception | None = None
        self.fail_initialize: Exception | None = None
        self.healthy = True

    async def initialize(self) -> None:
        self.initialize_calls += 1
        if self.fail_initialize is not None:
            raise self.fail_initialize

    async def get_entities(self, options: FetchOptions) -> FetchResult:
        self.calls.append(options)
        if self.fail_fetch is not None:
            raise self.fail_fetch
        entities = self.batches.pop(0) if self.batches else []
        return FetchResult(entities=entities, cursor=self.cursor)

    async def shutdown(self) -> None:
        self.shutdown_calls += 1

    async def is_healthy(self) -> bool:
        return self.healthy


class StubClassifier:
    """Classifier returning a fixed output (or raising) and recording contexts."""

    def __init__(
        self,
        classifier_id: str,
        output: ClassificationOutput | Mapping[str, Any] | None = None,
        *,
        error: Exception | None = None,
    ) -> None:
        self.id = classifier_id
        self.output = output
        self.error = error
        self.seen: list[tuple[Entity, ClassificationContext]] = []

    async def classify(
        self, entity: Entity, context: ClassificationContext
    ) -> ClassificationOutput | Mapping[str, Any] | None:
        self.seen.append((entity, context))
        if self.error is not None:
            raise self.error
        return self.output


class RecordingAction:
    """Action that records the contexts it handled."""

    def __init__(
        self,
        action_id: str,
        bindings: Mapping[str, Any],
        *,
        error: Exception | None = None,
        result: Callable[[ActionContext], Any] | None = None,
    ) -> None:
        self.id = action_id
        self.bindings = dict(bindings)
        self.error = error
        self.result = result
        self.handled: list[ActionContext] = []

    async def handle(self, context: ActionContext) -> ActionResult:
        self.handled.append(context)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result(context)
        return ActionResult(action_id=self.id, success=True, data={"entity": context.entity.id})


class EventRecorder:
    """Wildcard bus subscriber that keeps every event in order."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[EventPayload] = []
        bus.subscribe("*", self.events.append)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[EventPayload]:
        return [event for event in self.events if event.type == event_type]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def make_provider() -> type[StaticProvider]:
    """Factory for queued-batch providers: `make_provider(id, batches=...)`."""
    return StaticProvider


@pytest.fixture
def make_classifier() -> type[StubClassifier]:
    return StubClassifier


@pytest.fixture
def make_action() -> type[RecordingAction]:
    return RecordingAction


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    plugin_dir = tmp_path / "plugins"
    plugin_dir.mkdir()
    config_yaml = f"""
    engine:
      polling_interval_ms: 250
      batch_size: 5

    logging:
      level: debug

    metrics:
      enabled: false
      port: 9999

    domains:
      - id: "email"
        name: "Email inbox"
        provider: "tagrouter_test_providers:InboxProvider"
        options:
          mailbox: "support"
        plugin_dirs:
          - "{plugin_dir.as_posix()}"
        config:
          SLACK_CHANNEL: "#alerts"
      - id: "tickets"
        provider: "tagrouter_test_providers:build_tickets"
        enabled: false
    """
    secrets_yaml = """
    domains_token: "s3cr3t"
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "secrets.yaml", secrets_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)
