"""Unit tests for class enrollment configuration validation."""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from services.enrollment_service.schemas import (
    ClassEnrollmentConfig,
    EnrollmentMode,
    validate_enrollment_config,
)

START = datetime(2026, 1, 5, 8, 0, 0)


class TestValidateEnrollmentConfig:
    """Tests for validate_enrollment_config()."""

    def test_defaults_are_valid(self):
        result = validate_enrollment_config({})

        assert result.valid is True
        assert result.errors == []
        assert result.warnings == []

    def test_zero_capacity_is_rejected(self):
        result = validate_enrollment_config({"capacity": 0})

        assert result.valid is False
        assert [e.code for e in result.errors] == ["INVALID_CAPACITY"]

    def test_every_error_is_reported(self):
        result = validate_enrollment_config({
            "capacity": 0,
            "waitlist_capacity": -1,
            "enrollment_start": START,
            "enrollment_end": START - timedelta(days=1),
            "drop_deadline": START + timedelta(days=30),
            "withdraw_deadline": START + timedelta(days=10),
        })

        assert {e.code for e in result.errors} == {
            "INVALID_CAPACITY",
            "INVALID_WAITLIST_CAPACITY",
            "INVALID_DATE_RANGE",
            "INVALID_DEADLINE_ORDER",
        }

    def test_max_waitlist_position_must_fit_waitlist(self):
        result = validate_enrollment_config({"waitlist_capacity": 5, "max_waitlist_position": 6})

        assert result.valid is False
        assert result.errors[0].code == "INVALID_WAITLIST_POSITION"

    def test_capacity_below_enrollment_is_a_warning(self):
        result = validate_enrollment_config({"capacity": 10}, current_enrollment=12)

        assert result.valid is True
        assert [w.code for w in result.warnings] == ["CAPACITY_BELOW_ENROLLMENT"]

    def test_auto_approve_on_invitation_only_is_a_warning(self):
        result = validate_enrollment_config({
            "enrollment_mode": "invitation_only",
            "auto_approve": True,
        })

        assert result.valid is True
        assert result.warnings[0].code == "INCOMPATIBLE_SETTING"

    def test_unknown_mode_is_a_field_error(self):
        result = validate_enrollment_config({"enrollment_mode": "lottery"})

        assert result.valid is False
        assert result.errors[0].code == "INVALID_FIELD"
        assert result.errors[0].field == "enrollment_mode"


class TestClassEnrollmentConfig:
    """Tests for constructing the config model directly."""

    def test_invalid_config_raises(self):
        with pytest.raises(PydanticValidationError) as exc_info:
            ClassEnrollmentConfig(capacity=0)

        assert exc_info.value.errors()[0]["type"] == "invalid_enrollment_config"

    def test_config_is_frozen(self):
        config = ClassEnrollmentConfig(enrollment_mode=EnrollmentMode.RESTRICTED)

        with pytest.raises(PydanticValidationError):
            config.capacity = 5
