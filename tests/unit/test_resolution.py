from tagrouter.core.contracts import ClassificationOutput
from tagrouter.core.engine import ClassifierVerdict, resolve_classification


def _verdict(classifier_id: str, type_: str, confidence: float | None) -> ClassifierVerdict:
    return ClassifierVerdict(
        classifier_id=classifier_id,
        output=ClassificationOutput(type=type_, confidence=confidence),
    )


def test_highest_confidence_wins() -> None:
    winner = resolve_classification(
        [
            _verdict("a", "normal", 0.5),
            _verdict("b", "urgent", 0.95),
            _verdict("c", "spam", 0.7),
        ]
    )

    assert winner is not None
    assert winner.classifier_id == "b"
    assert winner.output.type == "urgent"
    assert winner.confidence == 0.95


def test_tie_keeps_first_registered() -> None:
    winner = resolve_classification(
        [
            _verdict("first", "normal", 0.8),
            _verdict("second", "urgent", 0.8),
        ]
    )

    assert winner is not None and winner.classifier_id == "first"


def test_absent_confidence_beats_partial_and_ties_with_certain() -> None:
    winner = resolve_classification(
        [
            _verdict("ml", "urgent", 0.99),
            _verdict("rule", "spam", None),
            _verdict("other", "normal", 1.0),
        ]
    )

    assert winner is not None and winner.classifier_id == "rule"
    assert winner.confidence == 1.0


def test_zero_confidence_verdict_still_wins_when_alone() -> None:
    winner = resolve_classification([_verdict("only", "normal", 0.0)])

    assert winner is not None and winner.output.type == "normal"


def test_no_verdicts_means_unclassified() -> None:
    assert resolve_classification([]) is None
