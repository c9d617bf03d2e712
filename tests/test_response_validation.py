import json
import logging

import pytest

from classes.errors import RecoveryError, ValidationError
from classes.response_schemas import (
    COACHING_EVALUATION_SHAPE,
    EMAIL_SEQUENCE_SHAPE,
    JSON_OBJECT_SHAPE,
    PARSED_ANSWERS_SHAPE,
    CoachingEvaluation,
    EmailSequenceResponse,
)
from classes.response_validation import parse_and_validate, validate_ai_text
from classes.retry_utils import is_retryable_error


# =============================================================================
# END-TO-END: RECOVERY + VALIDATION
# =============================================================================


def test_single_email_against_five_email_shape_is_rejected():
    raw = '```json\n{"emails":[{"emailNumber":1,"subject":"Hi","body":"Hello"}]}\n```'

    with pytest.raises(ValidationError) as exc_info:
        parse_and_validate(raw, EMAIL_SEQUENCE_SHAPE, context="email sequence")

    err = exc_info.value
    assert "emails" in str(err)
    assert "list of length 1" in str(err)
    assert err.issues[0]["path"] == "emails"
    assert err.issues[0]["type"] == "too_short"
    # a miscounted sample is worth re-rolling
    assert is_retryable_error(err)


def test_truncated_five_email_output_recovers_and_validates(make_emails):
    full = make_emails(5)
    raw = full[: -len("}]}")]

    result = parse_and_validate(raw, EMAIL_SEQUENCE_SHAPE, context="email sequence")

    assert isinstance(result, EmailSequenceResponse)
    assert [e.emailNumber for e in result.emails] == [1, 2, 3, 4, 5]
    assert result.emails[4].body == "Body of email 5"


def test_model_class_is_accepted_as_schema(make_emails):
    result = parse_and_validate(make_emails(5), EmailSequenceResponse)
    assert len(result.emails) == 5


# =============================================================================
# NO COERCION
# =============================================================================


def test_numeric_string_is_not_coerced_to_int(make_emails):
    raw = make_emails(5).replace('"emailNumber":1', '"emailNumber":"1"')

    with pytest.raises(ValidationError) as exc_info:
        parse_and_validate(raw, EMAIL_SEQUENCE_SHAPE)

    assert exc_info.value.issues[0]["path"] == "emails.0.emailNumber"


def test_int_is_not_coerced_to_string():
    with pytest.raises(ValidationError):
        parse_and_validate('{"q1": 5}', PARSED_ANSWERS_SHAPE)


def test_numeric_range_is_enforced():
    raw = json.dumps({"qualityScore": 140, "coachingFeedback": "ok", "needsRewrite": False})
    with pytest.raises(ValidationError) as exc_info:
        parse_and_validate(raw, COACHING_EVALUATION_SHAPE)
    assert exc_info.value.issues[0]["path"] == "qualityScore"


def test_optional_fields_may_be_absent():
    raw = json.dumps({"qualityScore": 72.5, "coachingFeedback": "Good depth.", "needsRewrite": False})
    result = parse_and_validate(raw, COACHING_EVALUATION_SHAPE)
    assert isinstance(result, CoachingEvaluation)
    assert result.categoryScores is None


def test_permissive_shape_accepts_any_object():
    assert parse_and_validate('{"anything": [1, {"x": null}]}', JSON_OBJECT_SHAPE) == {"anything": [1, {"x": None}]}


# =============================================================================
# FALLBACK & DIAGNOSTICS
# =============================================================================


def test_fallback_is_returned_on_validation_failure():
    fallback = {"emails": []}
    raw = '{"emails":[{"emailNumber":1,"subject":"Hi","body":"Hello"}]}'
    assert parse_and_validate(raw, EMAIL_SEQUENCE_SHAPE, fallback=fallback) is fallback


def test_fallback_is_returned_on_recovery_failure():
    assert parse_and_validate("no json at all", EMAIL_SEQUENCE_SHAPE, fallback=None) is None


def test_recovery_failure_without_fallback_propagates():
    with pytest.raises(RecoveryError):
        parse_and_validate("no json at all", EMAIL_SEQUENCE_SHAPE)


def test_failure_is_logged_with_field_path(caplog):
    raw = '{"emails":[{"emailNumber":1,"subject":"Hi","body":"Hello"}]}'
    with caplog.at_level(logging.ERROR, logger="draftguard_backend"):
        parse_and_validate(raw, EMAIL_SEQUENCE_SHAPE, context="email sequence", fallback=None)

    assert "raw length: " in caplog.text
    assert "emails" in caplog.text
    assert "email sequence" in caplog.text


# =============================================================================
# PLAIN TEXT
# =============================================================================


def test_validate_ai_text_strips_and_returns():
    assert validate_ai_text("  Hello there \n") == "Hello there"


def test_validate_ai_text_empty_raises_retryable_error():
    with pytest.raises(ValidationError) as exc_info:
        validate_ai_text("   ", context="rewrite")
    assert is_retryable_error(exc_info.value)


def test_validate_ai_text_fallback_and_min_length():
    assert validate_ai_text("short", min_length=10, fallback="default copy") == "default copy"
