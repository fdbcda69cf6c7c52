import pytest

from receipt_ledger.airlock import (
    DEGRADED_DESCRIPTION,
    ValidationFailure,
    ValidRecord,
    fallback_fields,
    parse_model_json,
    validate,
)


def _raw(**overrides) -> dict:
    raw = {
        "amount": 1280,
        "type": "expense",
        "date": "2024-05-01",
        "merchant": "ローソン (Lawson)",
        "category": "food",
        "description": "lunch",
    }
    raw.update(overrides)
    return raw


def test_valid_candidate_passes() -> None:
    outcome = validate(_raw())

    assert isinstance(outcome, ValidRecord)
    assert outcome.candidate.amount == 1280.0
    assert outcome.candidate.merchant == "ローソン (Lawson)"


def test_coerces_printed_amounts_enums_and_datetimes() -> None:
    outcome = validate(
        _raw(amount="¥1,280", type="EXPENSE", category=" Food ", date="2024/5/1 12:34:56", description=None)
    )

    assert isinstance(outcome, ValidRecord)
    candidate = outcome.candidate
    assert candidate.amount == 1280.0
    assert candidate.type == "expense"
    assert candidate.category == "food"
    assert candidate.date == "2024-05-01"
    assert candidate.description == ""


def test_iso_timestamp_is_truncated_to_date() -> None:
    outcome = validate(_raw(date="2024-05-01T23:59:00+09:00"))

    assert isinstance(outcome, ValidRecord)
    assert outcome.candidate.date == "2024-05-01"


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"amount": 0}, "amount"),
        ({"amount": -5}, "amount"),
        ({"amount": None}, "amount"),
        ({"amount": float("inf")}, "amount"),
        ({"merchant": "  "}, "merchant"),
        ({"date": "2024-02-30"}, "date"),
        ({"date": "yesterday"}, "date"),
        ({"type": "refund"}, "type"),
        ({"category": "groceries"}, "category"),
    ],
)
def test_rejects_invalid_fields(overrides: dict, field: str) -> None:
    outcome = validate(_raw(**overrides))

    assert isinstance(outcome, ValidationFailure)
    assert [e["field"] for e in outcome.errors] == [field]
    assert outcome.raw == _raw(**overrides)


def test_missing_fields_are_all_reported() -> None:
    outcome = validate({})

    assert isinstance(outcome, ValidationFailure)
    assert {e["field"] for e in outcome.errors} == {"amount", "type", "date", "merchant", "category"}


def test_non_object_is_a_failure() -> None:
    outcome = validate(["not", "an", "object"])

    assert isinstance(outcome, ValidationFailure)
    assert outcome.errors[0]["code"] == "object_type"


def test_fallback_fields_keep_what_is_usable() -> None:
    fields = fallback_fields(
        {"amount": "1,000", "type": "income", "date": "not a date", "merchant": "", "category": "misc"},
        today="2024-05-02",
    )

    assert fields == {
        "amount": 1000.0,
        "type": "income",
        "date": "2024-05-02",
        "merchant": "Unknown",
        "category": "other",
        "description": DEGRADED_DESCRIPTION,
    }


def test_fallback_fields_never_keep_negative_amounts() -> None:
    assert fallback_fields({"amount": -300}, today="2024-05-02")["amount"] == 0.0


def test_fallback_fields_drop_non_finite_amounts() -> None:
    for amount in (float("inf"), float("-inf"), float("nan")):
        assert fallback_fields({"amount": amount}, today="2024-05-02")["amount"] == 0.0


def test_parse_model_json_tolerates_code_fences_and_chatter() -> None:
    assert parse_model_json('```json\n{"amount": 100}\n```') == {"amount": 100}
    assert parse_model_json('Here you go: {"amount": 100} hope it helps') == {"amount": 100}


def test_parse_model_json_rejects_non_objects() -> None:
    with pytest.raises(ValueError):
        parse_model_json("I could not read this receipt.")
    with pytest.raises(ValueError):
        parse_model_json("[1, 2, 3]")
