"""カスタム例外のテスト"""

import pytest

from app.core.exceptions import (
    CatalogViolationError,
    GenerationFailure,
    GenerationRateLimitError,
    GenerationTimeoutError,
    GovernanceViolationError,
    InvalidInputError,
    MalformedGenerationError,
    PolicyViolationError,
    ResourceNotFoundError,
    RuleGuardException,
    SampleUnavailableError,
    StructuralError,
    ValidationError,
)


class TestHierarchy:
    """例外階層のテスト"""

    @pytest.mark.parametrize(
        "cls",
        [InvalidInputError, StructuralError, CatalogViolationError, PolicyViolationError],
    )
    def test_validation_errors(self, cls):
        assert issubclass(cls, ValidationError)
        assert cls.http_status_code == 400

    @pytest.mark.parametrize(
        "cls, status",
        [
            (GenerationFailure, 502),
            (GenerationTimeoutError, 504),
            (GenerationRateLimitError, 429),
            (MalformedGenerationError, 502),
        ],
    )
    def test_generation_errors(self, cls, status):
        assert issubclass(cls, GenerationFailure)
        assert cls.http_status_code == status

    def test_all_derive_from_base(self):
        for cls in (GovernanceViolationError, SampleUnavailableError, ResourceNotFoundError):
            assert issubclass(cls, RuleGuardException)


class TestDetail:
    """detail と to_dict のテスト"""

    def test_to_dict(self):
        error = PolicyViolationError("Rule violates policy", violations=[{"type": "x"}], stage="rule")
        assert error.to_dict() == {
            "error_code": "POLICY_VIOLATION",
            "message": "Rule violates policy",
            "detail": {"violations": [{"type": "x"}], "stage": "rule"},
        }

    def test_str(self):
        assert str(RuleGuardException("boom")) == "[RULEGUARD_ERROR] boom"
        error = ResourceNotFoundError("missing", resource_type="rule", resource_id="r1")
        assert str(error).startswith("[RESOURCE_NOT_FOUND] missing - ")

    def test_two_person_rule_is_forbidden(self):
        error = GovernanceViolationError("self approval", reason="two_person_rule")
        assert error.http_status_code == 403
        assert error.detail == {"reason": "two_person_rule"}

    def test_other_governance_reasons_conflict(self):
        error = GovernanceViolationError(
            "done", reason="terminal_state", suggestion_id="sug_1", current_status="approved"
        )
        assert error.http_status_code == 409
        assert error.detail == {
            "reason": "terminal_state",
            "suggestion_id": "sug_1",
            "current_status": "approved",
        }
        # クラス属性は変更されない
        assert GovernanceViolationError.http_status_code == 409

    def test_rate_limit_detail(self):
        error = GenerationRateLimitError(
            "Too many", limit=10, window_seconds=60, retry_after_seconds=12
        )
        assert error.detail == {
            "limit": 10,
            "window_seconds": 60,
            "retry_after_seconds": 12,
            "error_type": "rate_limit",
        }

    def test_timeout_detail(self):
        error = GenerationTimeoutError("slow", timeout_seconds=30.0, provider="openai")
        assert error.detail["timeout_seconds"] == 30.0
        assert error.detail["provider"] == "openai"
        assert error.detail["error_type"] == "timeout"

    def test_sample_unavailable(self):
        error = SampleUnavailableError("empty", requested_size=100)
        assert error.detail == {"requested_size": 100}
        assert error.http_status_code == 503
