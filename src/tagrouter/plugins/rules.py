"""
Declarative classification rules.

A rule names a routing type and up to three match criteria. The compiled
classifier tries them in a fixed order (content regex, content substring,
sender regex) and returns the rule's output on the first hit. Every match is
case-insensitive.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..core.contracts import ClassificationContext, ClassificationOutput, Entity

RULE_ID_PREFIX = "rule:"


class RuleMatch(BaseModel):
    """Match criteria for a rule; at least one must be set."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    regex: str | None = Field(default=None, description="Pattern searched in the content.")
    contains: str | None = Field(default=None, description="Substring searched in the content.")
    sender: str | None = Field(
        default=None, description="Pattern searched in the `sender` metadata field."
    )

    @field_validator("regex", "sender")
    @classmethod
    def _valid_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def _has_criterion(self) -> RuleMatch:
        if self.regex is None and not self.contains and self.sender is None:
            raise ValueError("match requires at least one of regex, contains or sender")
        return self


class RuleDefinition(BaseModel):
    """Declarative classifier definition as found in rule files."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(min_length=1)
    description: str | None = None
    match: RuleMatch
    type: str = Field(min_length=1)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    tags: tuple[str, ...] | None = None


class RuleClassifier:
    """Classifier compiled from a `RuleDefinition`."""

    def __init__(self, definition: RuleDefinition) -> None:
        self.definition = definition
        self.id = f"{RULE_ID_PREFIX}{definition.name}"
        self.name = definition.name
        self.description = definition.description
        match = definition.match
        self._regex = re.compile(match.regex, re.IGNORECASE) if match.regex is not None else None
        self._contains = match.contains.casefold() if match.contains else None
        self._sender = re.compile(match.sender, re.IGNORECASE) if match.sender is not None else None
        self._output = ClassificationOutput(
            type=definition.type,
            confidence=1.0 if definition.confidence is None else definition.confidence,
            tags=definition.tags,
        )

    def __repr__(self) -> str:
        return f"RuleClassifier(id={self.id!r}, type={self.definition.type!r})"

    def classify(
        self, entity: Entity, context: ClassificationContext | None = None
    ) -> ClassificationOutput | None:
        content = entity.content or ""
        if self._regex is not None and self._regex.search(content):
            return self._output
        if self._contains is not None and self._contains in content.casefold():
            return self._output
        if self._sender is not None:
            sender = entity.metadata.get("sender")
            if sender is not None and self._sender.search(str(sender)):
                return self._output
        return None


def compile_rule(definition: RuleDefinition | dict[str, Any]) -> RuleClassifier:
    """Validate a raw definition if needed and compile it into a classifier."""
    if not isinstance(definition, RuleDefinition):
        definition = RuleDefinition.model_validate(definition)
    return RuleClassifier(definition)


def looks_like_rule(obj: Any) -> bool:
    """Cheap shape check used to skip unrelated documents in rule files."""
    return isinstance(obj, dict) and {"name", "match", "type"} <= obj.keys()


__all__ = [
    "RULE_ID_PREFIX",
    "RuleClassifier",
    "RuleDefinition",
    "RuleMatch",
    "compile_rule",
    "looks_like_rule",
]
