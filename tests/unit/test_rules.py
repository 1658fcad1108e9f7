import pytest
from pydantic import ValidationError

from tagrouter.core.contracts import ClassificationOutput, Entity
from tagrouter.plugins.rules import RuleClassifier, RuleDefinition, compile_rule, looks_like_rule


def test_contains_rule_matches_case_insensitively() -> None:
    classifier = compile_rule(
        {"name": "spam-words", "match": {"contains": "free money"}, "type": "spam"}
    )

    output = classifier.classify(Entity(id="1", content="Get FREE MONEY now!"))

    assert isinstance(classifier, RuleClassifier)
    assert classifier.id == "rule:spam-words"
    assert output == ClassificationOutput(type="spam", confidence=1.0)
    assert classifier.classify(Entity(id="2", content="Hello friend")) is None


def test_regex_rule_matches_content() -> None:
    classifier = compile_rule(
        {
            "name": "invoice",
            "match": {"regex": r"invoice\s+#\d+"},
            "type": "billing",
            "confidence": 0.8,
            "tags": ["finance"],
        }
    )

    output = classifier.classify(Entity(id="1", content="Please pay INVOICE #1234"))

    assert output is not None
    assert output.confidence == 0.8
    assert output.tags == ("finance",)
    assert classifier.classify(Entity(id="2", content="invoice pending")) is None


def test_sender_rule_reads_metadata() -> None:
    classifier = compile_rule(
        {"name": "vip", "match": {"sender": r"@bigcustomer\.com$"}, "type": "vip"}
    )

    assert classifier.classify(
        Entity(id="1", metadata={"sender": "CEO@BigCustomer.com"})
    ) == ClassificationOutput(type="vip", confidence=1.0)
    assert classifier.classify(Entity(id="2", metadata={"sender": "someone@else.org"})) is None
    assert classifier.classify(Entity(id="3")) is None


def test_any_criterion_is_enough() -> None:
    classifier = compile_rule(
        {
            "name": "combo",
            "match": {"regex": "^never$", "contains": "unsubscribe", "sender": "newsletter"},
            "type": "bulk",
        }
    )

    assert classifier.classify(Entity(id="1", content="click to Unsubscribe")) is not None
    assert classifier.classify(
        Entity(id="2", content="hi", metadata={"sender": "Newsletter <n@x.io>"})
    ) is not None
    assert classifier.classify(Entity(id="3", content="hi")) is None


def test_rule_definition_model_is_accepted_directly() -> None:
    definition = RuleDefinition(name="d", match={"contains": "x"}, type="t", description="doc")
    classifier = compile_rule(definition)

    assert classifier.definition is definition
    assert classifier.description == "doc"


@pytest.mark.parametrize(
    "raw",
    [
        {"name": "no-criteria", "match": {}, "type": "spam"},
        {"name": "bad-regex", "match": {"regex": "(unclosed"}, "type": "spam"},
        {"name": "bad-confidence", "match": {"contains": "x"}, "type": "spam", "confidence": 2},
        {"name": "unknown-key", "match": {"subject": "x"}, "type": "spam"},
        {"name": "", "match": {"contains": "x"}, "type": "spam"},
    ],
)
def test_invalid_rules_are_rejected(raw: dict) -> None:
    with pytest.raises(ValidationError):
        compile_rule(raw)


def test_looks_like_rule() -> None:
    assert looks_like_rule({"name": "a", "match": {}, "type": "t"})
    assert not looks_like_rule({"name": "a", "type": "t"})
    assert not looks_like_rule(["name", "match", "type"])
