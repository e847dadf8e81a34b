"""Tests for obspine.core.errors."""

import pytest

from obspine.core.errors import (
    ConfigError,
    DecimationUnsupportedError,
    ErrorCategory,
    ErrorContext,
    NotFoundError,
    ObsSpineError,
    StorageError,
    UnsupportedFilterError,
    ValidationError,
)


class TestErrorContext:
    def test_empty_context(self):
        ctx = ErrorContext()
        assert ctx.procedure is None
        assert ctx.metadata == {}
        assert ctx.to_dict() == {}

    def test_to_dict_skips_none_and_merges_metadata(self):
        ctx = ErrorContext(operation="write_observation", procedure="p1", metadata={"rows": 3})
        assert ctx.to_dict() == {"operation": "write_observation", "procedure": "p1", "rows": 3}


class TestCategories:
    @pytest.mark.parametrize(
        "error, category, retryable",
        [
            (ValidationError("bad"), ErrorCategory.VALIDATION, False),
            (UnsupportedFilterError("bad"), ErrorCategory.FILTER, False),
            (NotFoundError("procedure", "p1"), ErrorCategory.NOT_FOUND, False),
            (DecimationUnsupportedError("bad"), ErrorCategory.DECIMATION, False),
            (ConfigError("bad"), ErrorCategory.CONFIG, False),
            (StorageError("bad"), ErrorCategory.STORAGE, True),
        ],
    )
    def test_defaults(self, error, category, retryable):
        assert isinstance(error, ObsSpineError)
        assert error.category is category
        assert error.retryable is retryable

    def test_override_retryable(self):
        assert StorageError("locked", retryable=False).retryable is False


class TestObsSpineError:
    def test_with_context_sets_known_keys_and_metadata(self):
        err = ValidationError("type mismatch").with_context(procedure="p1", column="depth")
        assert err.context.procedure == "p1"
        assert err.context.metadata == {"column": "depth"}

    def test_with_context_is_fluent(self):
        err = ValidationError("x")
        assert err.with_context(operation="op") is err

    def test_cause_is_chained(self):
        cause = ValueError("boom")
        err = StorageError("failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "boom"

    def test_to_dict(self):
        err = ValidationError("bad value", field="depth", value=3, constraint="field_type")
        data = err.to_dict()
        assert data["error_type"] == "ValidationError"
        assert data["category"] == "VALIDATION"
        assert data["field"] == "depth"
        assert data["value"] == "3"
        assert data["constraint"] == "field_type"

    def test_not_found_message(self):
        err = NotFoundError("procedure", "p9")
        assert str(err) == "procedure not found: p9"
        assert err.identifier == "p9"

    def test_unsupported_filter_operator(self):
        assert UnsupportedFilterError("nope", operator="between").operator == "between"

    def test_repr(self):
        assert repr(ConfigError("x")) == "ConfigError('x', category=CONFIG)"
