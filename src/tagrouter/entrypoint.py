"""
CLI entrypoint that boots a TagRouter engine from a configuration directory.

Configuration is loaded with Dynaconf, every enabled domain is wired from its
provider import path and plugin directories, and the engine runs until a
termination signal arrives. ``--once`` runs a single poll cycle and exits.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import inspect
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from .core.bus import EventBus
from .core.config import ConfigError, ConfigService, ConfigSnapshot, DomainSettings
from .core.engine import DomainRegistration, TagRouterEngine
from .plugins import PluginLoader
from .status import EngineMetrics

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: int = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.absolute():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )
    logging.getLogger().setLevel(numeric_level)


def resolve_import_path(path: str) -> Any:
    """Import ``package.module:attribute`` and return the attribute."""

    module_name, sep, attribute = path.partition(":")
    if not module_name or not sep or not attribute:
        raise ConfigError(f"Invalid import path '{path}'; expected 'package.module:attribute'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import module '{module_name}': {exc}") from exc
    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigError(f"Module '{module_name}' has no attribute '{attribute}'.") from exc
    return target


def build_provider(settings: DomainSettings) -> Any:
    """
    Turn a domain's provider setting into a provider instance.

    Classes and plain callables are invoked with the domain ``options`` as
    keyword arguments; any other object is used as-is.
    """

    target = resolve_import_path(settings.provider)
    if inspect.isclass(target) or (callable(target) and not hasattr(target, "get_entities")):
        try:
            provider = target(**settings.options)
        except TypeError as exc:
            raise ConfigError(
                f"Provider '{settings.provider}' rejected options for domain "
                f"'{settings.id}': {exc}"
            ) from exc
    else:
        if settings.options:
            LOGGER.warning(
                "Domain %s provider %s is an instance; ignoring options.",
                settings.id,
                settings.provider,
            )
        provider = target
    if not callable(getattr(provider, "get_entities", None)):
        raise ConfigError(
            f"Provider '{settings.provider}' for domain '{settings.id}' has no get_entities()."
        )
    return provider


def build_domains(
    snapshot: ConfigSnapshot,
    loader: PluginLoader | None = None,
    extra_plugin_dirs: Sequence[Path] | None = None,
) -> list[DomainRegistration]:
    """Build one registration per enabled domain in configuration order."""

    loader = loader or PluginLoader()
    registrations: list[DomainRegistration] = []
    for settings in snapshot.domains:
        if not settings.enabled:
            LOGGER.info("Domain %s is disabled; skipping", settings.id)
    for settings in snapshot.enabled_domains:
        provider = build_provider(settings)
        plugins = loader.load_from_directories([*settings.plugin_dirs, *(extra_plugin_dirs or [])])
        if not plugins.classifiers:
            LOGGER.warning(
                "Domain %s has no classifiers; every entity will be unclassified.", settings.id
            )
        registrations.append(
            DomainRegistration(
                id=settings.id,
                name=settings.display_name,
                provider=provider,
                classifiers=plugins.classifiers,
                actions=plugins.actions,
                config=settings.config,
            )
        )
    return registrations


async def run_engine(
    *,
    config_dir: Path | None,
    extra_plugin_dirs: Sequence[Path] | None = None,
    once: bool = False,
    enable_metrics: bool | None = None,
) -> TagRouterEngine:
    """Wire the engine from configuration and run until interrupted."""

    config_service = ConfigService(config_dir=config_dir)
    snapshot = config_service.snapshot
    if snapshot.logging.file is not None:
        _ensure_rotating_file_handler(
            snapshot.logging.file,
            max_mb=snapshot.logging.max_mb,
            backup_count=snapshot.logging.backup_count,
        )

    registrations = build_domains(snapshot, extra_plugin_dirs=extra_plugin_dirs)
    if not registrations:
        raise ConfigError("No enabled domains configured; nothing to run.")

    bus = EventBus()
    engine = TagRouterEngine(
        polling_interval_ms=snapshot.engine.polling_interval_ms,
        batch_size=snapshot.engine.batch_size,
        bus=bus,
    )
    for registration in registrations:
        engine.register_domain(registration)

    metrics: EngineMetrics | None = None
    metrics_enabled = snapshot.metrics.enabled if enable_metrics is None else enable_metrics
    if metrics_enabled:
        metrics = EngineMetrics(namespace=snapshot.metrics.namespace)
        metrics.attach(bus)
        if not once:
            metrics.serve(port=snapshot.metrics.port, addr=snapshot.metrics.addr)

    try:
        if once:
            await engine.start()
            await engine.stop()
            await bus.drain()
            return engine

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await engine.start()
        LOGGER.info(
            "TagRouter running with %d domain(s). Press Ctrl+C to stop.", len(registrations)
        )
        try:
            await stop_event.wait()
        finally:
            await engine.stop()
            await bus.drain()
        return engine
    finally:
        if metrics is not None:
            metrics.shutdown()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TagRouter classification and routing engine.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: ./config).",
    )
    parser.add_argument(
        "--plugin-dir",
        dest="plugin_dirs",
        action="append",
        type=Path,
        default=[],
        metavar="DIR",
        help="Extra plugin directory loaded for every domain (repeatable).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: logging.level from config, else INFO).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit.",
    )
    parser.add_argument(
        "--metrics",
        dest="metrics",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Force the Prometheus exporter on or off (default: metrics.enabled).",
    )
    return parser.parse_args(argv)


def _initial_log_level(args: argparse.Namespace) -> str:
    if args.log_level:
        return str(args.log_level)
    try:
        return ConfigService(config_dir=args.config_dir).snapshot.logging.level
    except ConfigError:
        return "INFO"


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(_initial_log_level(args))
    try:
        asyncio.run(
            run_engine(
                config_dir=args.config_dir,
                extra_plugin_dirs=args.plugin_dirs,
                once=args.once,
                enable_metrics=args.metrics,
            )
        )
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return 0
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return 2
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("TagRouter engine crashed.")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "LOG_FORMAT",
    "build_domains",
    "build_provider",
    "configure_logging",
    "main",
    "parse_args",
    "resolve_import_path",
    "run_engine",
]
