"""
Plugin authoring paths: declarative rules and dynamically imported modules.
"""

from .loader import LoadedPlugins, PluginLoader, PluginLoadError
from .rules import RuleClassifier, RuleDefinition, RuleMatch, compile_rule

__all__ = [
    "LoadedPlugins",
    "PluginLoadError",
    "PluginLoader",
    "RuleClassifier",
    "RuleDefinition",
    "RuleMatch",
    "compile_rule",
]
