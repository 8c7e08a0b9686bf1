"""
Tests for the error code taxonomy and structured error responses.
"""

import pytest

from exceptions import (
    CascadeOutOfRange,
    InvalidReading,
    LedgerError,
    ReadOnlyField,
    StaleSequence,
    TransactionFailure,
    TripNotFound,
    ValidationError,
    VehicleNotFound,
)
from utils.error_codes import (
    ERROR_METADATA,
    ErrorCategory,
    ErrorCode,
    StructuredError,
    error_code_for,
    get_error_metadata,
)


class TestErrorMetadata:
    def test_every_code_has_metadata(self):
        for code in ErrorCode:
            assert code in ERROR_METADATA
            assert {"category", "description", "severity", "alert", "http_status"} <= set(ERROR_METADATA[code])

    def test_unknown_code_falls_back_to_system(self):
        metadata = get_error_metadata("E999")
        assert metadata["category"] == ErrorCategory.SYSTEM
        assert metadata["http_status"] == 500

    def test_stale_sequence_does_not_alert(self):
        assert get_error_metadata(ErrorCode.E401_STALE_SEQUENCE)["alert"] is False


class TestErrorCodeFor:
    @pytest.mark.parametrize("exception,code,status", [
        (InvalidReading("x"), ErrorCode.E001_INVALID_READING, 400),
        (ReadOnlyField("x", field="end_km"), ErrorCode.E004_READONLY_FIELD, 400),
        (ValidationError("x"), ErrorCode.E003_INVALID_DATA_TYPE, 400),
        (TripNotFound("x"), ErrorCode.E400_TRIP_NOT_FOUND, 404),
        (VehicleNotFound("x"), ErrorCode.E404_VEHICLE_NOT_FOUND, 404),
        (StaleSequence("x"), ErrorCode.E401_STALE_SEQUENCE, 409),
        (CascadeOutOfRange("x"), ErrorCode.E402_CASCADE_OUT_OF_RANGE, 422),
        (TransactionFailure("x"), ErrorCode.E201_DB_TRANSACTION_FAILED, 503),
    ])
    def test_mapping(self, exception, code, status):
        assert error_code_for(exception) == code
        assert StructuredError.from_exception(exception).http_status == status

    def test_unmapped_exceptions(self):
        assert error_code_for(RuntimeError("x")) == ErrorCode.E500_INTERNAL_SERVER_ERROR
        assert error_code_for(LedgerError("x")) == ErrorCode.E500_INTERNAL_SERVER_ERROR


class TestStructuredError:
    def test_from_exception_carries_details(self):
        error = StructuredError.from_exception(
            CascadeOutOfRange("Cascade would produce a negative reading", trip_id=2, shifted_start_km=-90),
            vehicle_id=7,
        )

        assert error.message == "Cascade would produce a negative reading"
        assert error.context == {"trip_id": 2, "shifted_start_km": -90, "vehicle_id": 7}

    def test_to_response(self):
        error = StructuredError.from_exception(TripNotFound("Trip not found", trip_id=42))

        assert error.to_response() == {
            "error": "Trip not found",
            "code": "E400",
            "details": {"trip_id": 42},
        }

    def test_to_dict_for_logging(self):
        exc = StaleSequence("changed", vehicle_id=7)
        logged = StructuredError.from_exception(exc).to_dict()

        assert logged["code"] == "E401"
        assert logged["category"] == "business_logic"
        assert logged["exception_type"] == "StaleSequence"
        assert logged["context"] == {"vehicle_id": 7}

    def test_str(self):
        error = StructuredError(ErrorCode.E001_INVALID_READING, "Reading below start")
        assert str(error) == "[E001] Reading below start"
