"""Tests for the error taxonomy and exit codes."""

from __future__ import annotations

import pytest

from pipewarden.core.errors import (
    FailureClass,
    MissingMetadataError,
    PolicyViolation,
    PromotionBlocked,
    RunCancelled,
    StageFailure,
    TransientInfrastructureError,
    ValidationError,
    VerificationFailure,
    error_for,
    exit_code_for,
)


class TestExitCodes:
    @pytest.mark.parametrize(
        ("classification", "code"),
        [
            (FailureClass.VALIDATION_ERROR, 10),
            (FailureClass.POLICY_VIOLATION, 11),
            (FailureClass.AUTHENTICATION_ERROR, 12),
            (FailureClass.IMMUTABILITY_VIOLATION, 13),
            (FailureClass.TRANSIENT_INFRASTRUCTURE, 14),
            (FailureClass.TERMINAL_INFRASTRUCTURE, 15),
            (FailureClass.VERIFICATION_FAILURE, 16),
            (FailureClass.PROMOTION_BLOCKED, 17),
            (FailureClass.ROLLBACK_FAILURE, 18),
            (FailureClass.STAGE_FAILURE, 19),
            (FailureClass.CANCELLED, 20),
        ],
    )
    def test_distinct_codes(self, classification, code):
        assert exit_code_for(classification) == code
        assert exit_code_for(classification.value) == code

    def test_unknown_classification(self):
        assert exit_code_for(None) == 1
        assert exit_code_for("disk_on_fire") == 1


class TestErrorClasses:
    def test_missing_metadata_is_a_validation_error(self):
        error = MissingMetadataError(["run_id", "build_timestamp"])
        assert isinstance(error, ValidationError)
        assert error.exit_code == 10
        assert error.message == "Artifact metadata incomplete: run_id, build_timestamp"

    def test_policy_violation_lists_rules(self):
        error = PolicyViolation([("no-hardcoded-secrets", "AWS key in env"), ("x", "y")])
        assert error.violations[0][0] == "no-hardcoded-secrets"
        assert "no-hardcoded-secrets: AWS key in env; x: y" in str(error)

    def test_promotion_blocked_carries_reason(self):
        error = PromotionBlocked("soak_time_not_elapsed", "wait", detail_ref="promotion:1")
        assert error.reason == "soak_time_not_elapsed"
        assert error.detail_ref == "promotion:1"
        assert error.classification == FailureClass.PROMOTION_BLOCKED


class TestErrorFor:
    def test_builds_matching_class(self):
        error = error_for(FailureClass.TRANSIENT_INFRASTRUCTURE, "503", detail_ref="log:1")
        assert type(error) is TransientInfrastructureError
        assert error.detail_ref == "log:1"
        assert type(error_for(FailureClass.VERIFICATION_FAILURE, "x")) is VerificationFailure
        assert type(error_for(FailureClass.CANCELLED, "x")) is RunCancelled

    def test_classes_needing_extra_arguments_fall_back(self):
        assert type(error_for(FailureClass.POLICY_VIOLATION, "x")) is StageFailure
        assert type(error_for(FailureClass.PROMOTION_BLOCKED, "x")) is StageFailure
