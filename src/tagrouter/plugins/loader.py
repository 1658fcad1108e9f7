"""
Plugin loader that turns rule files and Python modules into plugin instances.

Rule files (`.yml`, `.yaml`, `.json`) hold one rule definition or a list of
them and compile to `RuleClassifier` instances. Python files are imported
under a private module name; every public module-level value, including the
items of public lists and tuples, that satisfies the classifier or action
contract is collected. Loading a directory never fails because of a single
bad file: the error is logged and the next file is tried.
"""

from __future__ import annotations

import hashlib
import importlib.util
import json
import logging
import sys
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any

import yaml
from pydantic import ValidationError

from ..core.contracts import (
    ActionPlugin,
    ClassificationPlugin,
    is_action_plugin,
    is_classification_plugin,
)
from .rules import compile_rule, looks_like_rule

logger = logging.getLogger(__name__)

RULE_SUFFIXES = frozenset({".yml", ".yaml", ".json"})
CODE_SUFFIXES = frozenset({".py"})
MODULE_NAMESPACE = "tagrouter_plugins"


class PluginLoadError(RuntimeError):
    """Raised when a single plugin file cannot be parsed or imported."""


@dataclass
class LoadedPlugins:
    """Classifiers and actions collected by a load call, in discovery order."""

    classifiers: list[ClassificationPlugin] = field(default_factory=list)
    actions: list[ActionPlugin] = field(default_factory=list)

    def extend(self, other: LoadedPlugins) -> None:
        self.classifiers.extend(other.classifiers)
        self.actions.extend(other.actions)

    def __len__(self) -> int:
        return len(self.classifiers) + len(self.actions)


class PluginLoader:
    """Discover plugins on disk and return them as a `LoadedPlugins` registry."""

    def __init__(self, *, logger: logging.Logger | logging.LoggerAdapter | None = None) -> None:
        self.logger = logger if logger is not None else logging.getLogger(__name__)

    def load_from_directories(self, paths: Iterable[str | Path]) -> LoadedPlugins:
        result = LoadedPlugins()
        for path in paths:
            result.extend(self.load_from_directory(path))
        return result

    def load_from_directory(self, path: str | Path) -> LoadedPlugins:
        """Load every recognised file directly inside ``path`` in name order."""
        directory = Path(path)
        result = LoadedPlugins()
        if not directory.exists():
            self.logger.warning("Plugin directory %s does not exist", directory)
            return result
        if not directory.is_dir():
            self.logger.warning("Plugin path %s is not a directory", directory)
            return result

        for file_path in sorted(directory.iterdir()):
            if not file_path.is_file() or file_path.name.startswith(("_", ".")):
                continue
            suffix = file_path.suffix.lower()
            try:
                if suffix in RULE_SUFFIXES:
                    result.extend(self.load_rule_file(file_path))
                elif suffix in CODE_SUFFIXES:
                    result.extend(self.load_code_file(file_path))
            except PluginLoadError as exc:
                self.logger.error("Failed to load plugin file %s: %s", file_path, exc)
            except Exception:
                self.logger.exception("Unexpected error while loading plugin file %s", file_path)

        self.logger.info(
            "Loaded %d classifier(s) and %d action(s) from %s",
            len(result.classifiers),
            len(result.actions),
            directory,
        )
        return result

    def load_rule_file(self, path: str | Path) -> LoadedPlugins:
        """Parse a rule file and compile each valid rule it contains."""
        file_path = Path(path)
        result = LoadedPlugins()
        parsed = self._parse_rule_file(file_path)
        if parsed is None:
            return result

        definitions = parsed if isinstance(parsed, list) else [parsed]
        for index, definition in enumerate(definitions):
            if not looks_like_rule(definition):
                self.logger.debug("Skipping non-rule entry %d in %s", index, file_path)
                continue
            try:
                classifier = compile_rule(definition)
            except ValidationError as exc:
                self.logger.warning(
                    "Invalid rule %r in %s: %s",
                    definition.get("name"),
                    file_path,
                    exc.errors(include_url=False),
                )
                continue
            result.classifiers.append(classifier)
            self.logger.debug("Loaded rule classifier %s from %s", classifier.id, file_path)
        return result

    def load_code_file(self, path: str | Path) -> LoadedPlugins:
        """Import a Python file and collect the plugin objects it exposes."""
        file_path = Path(path)
        module = self._import_file(file_path)
        result = LoadedPlugins()
        seen: set[int] = set()
        for export_name, value in self._exports(module):
            candidates = value if isinstance(value, list | tuple) else [value]
            for candidate in candidates:
                if id(candidate) in seen:
                    continue
                if is_classification_plugin(candidate):
                    result.classifiers.append(candidate)
                elif is_action_plugin(candidate):
                    result.actions.append(candidate)
                else:
                    continue
                seen.add(id(candidate))
                self.logger.debug(
                    "Loaded plugin %s from %s (export %s)",
                    getattr(candidate, "id", "?"),
                    file_path,
                    export_name,
                )
        return result

    def _parse_rule_file(self, file_path: Path) -> Any:
        try:
            text = file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PluginLoadError(f"cannot read {file_path}: {exc}") from exc
        try:
            if file_path.suffix.lower() == ".json":
                return json.loads(text) if text.strip() else None
            return yaml.safe_load(text)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise PluginLoadError(f"cannot parse {file_path}: {exc}") from exc

    def _import_file(self, file_path: Path) -> ModuleType:
        digest = hashlib.sha1(str(file_path.resolve()).encode("utf-8")).hexdigest()[:10]
        module_name = f"{MODULE_NAMESPACE}_{file_path.stem}_{digest}"
        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"cannot import {file_path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            sys.modules.pop(module_name, None)
            raise PluginLoadError(f"error while importing {file_path}: {exc}") from exc
        return module

    @staticmethod
    def _exports(module: ModuleType) -> list[tuple[str, Any]]:
        names = getattr(module, "__all__", None)
        if names is None:
            names = [name for name in vars(module) if not name.startswith("_")]
        return [(name, getattr(module, name)) for name in names if hasattr(module, name)]


__all__ = ["LoadedPlugins", "PluginLoadError", "PluginLoader"]
