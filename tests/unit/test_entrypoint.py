import logging
import logging.handlers
import sys
import textwrap
from pathlib import Path

import pytest

from tagrouter import entrypoint
from tagrouter.core.config import ConfigError, ConfigService, DomainSettings
from tagrouter.entrypoint import (
    build_domains,
    build_provider,
    main,
    parse_args,
    resolve_import_path,
    run_engine,
)

PROVIDER_MODULE = """
from tagrouter.core.contracts import BaseEntityProvider, Entity, FetchResult

SEEN = []


class InboxProvider(BaseEntityProvider):
    id = "inbox"

    def __init__(self, mailbox="default"):
        self.mailbox = mailbox
        self.served = False

    async def get_entities(self, options):
        SEEN.append((self.mailbox, options.limit))
        if self.served:
            return FetchResult()
        self.served = True
        return FetchResult(entities=[Entity(id="e1", content="URGENT please")])


def build_tickets():
    return InboxProvider("tickets")


instance = InboxProvider("shared")
"""

RULES = """
name: urgent
match:
  contains: urgent
type: urgent
"""

ACTIONS = """
HANDLED = []


class Record:
    id = "record"
    bindings = {"urgent": None}

    def handle(self, context):
        HANDLED.append(context.entity.id)
        return {"success": True}


record = Record()
"""


@pytest.fixture
def provider_module(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    module_dir = tmp_path / "modules"
    module_dir.mkdir()
    (module_dir / "tagrouter_test_providers.py").write_text(
        textwrap.dedent(PROVIDER_MODULE), encoding="utf-8"
    )
    monkeypatch.syspath_prepend(str(module_dir))
    sys.modules.pop("tagrouter_test_providers", None)
    yield
    sys.modules.pop("tagrouter_test_providers", None)


@pytest.fixture
def populated_config_dir(sample_config_dir: Path) -> Path:
    plugin_dir = sample_config_dir.parent / "plugins"
    (plugin_dir / "rules.yaml").write_text(RULES, encoding="utf-8")
    (plugin_dir / "actions.py").write_text(ACTIONS, encoding="utf-8")
    return sample_config_dir


def test_resolve_import_path(provider_module) -> None:
    target = resolve_import_path("tagrouter_test_providers:InboxProvider")

    assert target.__name__ == "InboxProvider"
    with pytest.raises(ConfigError):
        resolve_import_path("tagrouter_test_providers:Missing")
    with pytest.raises(ConfigError):
        resolve_import_path("not_a_module_anywhere_xyz:thing")
    with pytest.raises(ConfigError):
        resolve_import_path("no-colon")


def test_build_provider_handles_classes_factories_and_instances(provider_module) -> None:
    from_class = build_provider(
        DomainSettings(
            id="a",
            provider="tagrouter_test_providers:InboxProvider",
            options={"mailbox": "x"},
        )
    )
    from_factory = build_provider(
        DomainSettings(id="b", provider="tagrouter_test_providers:build_tickets")
    )
    from_instance = build_provider(
        DomainSettings(id="c", provider="tagrouter_test_providers:instance")
    )

    assert from_class.mailbox == "x"
    assert from_factory.mailbox == "tickets"
    assert from_instance.mailbox == "shared"


def test_build_provider_rejects_bad_options(provider_module) -> None:
    with pytest.raises(ConfigError):
        build_provider(
            DomainSettings(
                id="a",
                provider="tagrouter_test_providers:InboxProvider",
                options={"unexpected": True},
            )
        )


def test_build_domains_wires_enabled_domains(
    provider_module, populated_config_dir: Path
) -> None:
    snapshot = ConfigService(config_dir=populated_config_dir).snapshot

    registrations = build_domains(snapshot)

    assert [r.id for r in registrations] == ["email"]
    email = registrations[0]
    assert email.name == "Email inbox"
    assert [c.id for c in email.classifiers] == ["rule:urgent"]
    assert [a.id for a in email.actions] == ["record"]
    assert email.config["SLACK_CHANNEL"] == "#alerts"


@pytest.mark.asyncio
async def test_run_engine_once_processes_a_single_cycle(
    provider_module, populated_config_dir: Path
) -> None:
    engine = await run_engine(config_dir=populated_config_dir, once=True)

    seen = sys.modules["tagrouter_test_providers"].SEEN
    assert seen == [("support", 5)]
    assert not engine.is_running
    assert list(engine.domains) == ["email"]


@pytest.mark.asyncio
async def test_run_engine_without_enabled_domains_raises(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("engine:\n  batch_size: 1\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        await run_engine(config_dir=config_dir, once=True)


def test_parse_args_collects_plugin_dirs() -> None:
    args = parse_args(["--plugin-dir", "a", "--plugin-dir", "b", "--once", "--no-metrics"])

    assert args.plugin_dirs == [Path("a"), Path("b")]
    assert args.once is True
    assert args.metrics is False
    assert args.config_dir is None


def test_main_returns_config_error_code(tmp_path: Path) -> None:
    assert main(["--config-dir", str(tmp_path / "missing"), "--once", "--log-level", "INFO"]) == 2


def test_main_runs_once(provider_module, populated_config_dir: Path) -> None:
    assert main(["--config-dir", str(populated_config_dir), "--once"]) == 0


def test_rotating_file_handler_is_added_once(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "tagrouter.log"
    root = logging.getLogger()
    try:
        entrypoint._ensure_rotating_file_handler(log_file, max_mb=1, backup_count=1)
        entrypoint._ensure_rotating_file_handler(log_file, max_mb=1, backup_count=1)
        handlers = [
            h
            for h in root.handlers
            if isinstance(h, logging.handlers.RotatingFileHandler)
            and Path(h.baseFilename) == log_file.absolute()
        ]
        assert len(handlers) == 1
        assert log_file.parent.is_dir()
    finally:
        for handler in list(root.handlers):
            if isinstance(handler, logging.handlers.RotatingFileHandler):
                root.removeHandler(handler)
                handler.close()
