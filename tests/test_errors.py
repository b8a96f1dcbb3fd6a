"""
Tests for protocol error kinds
"""

from interbank.errors import (
    ErrorKind, HTTP_STATUS, InterbankError, DeliveryFailure, InsufficientFunds,
    TokenExpired, error_for_code,
)


class TestErrorKinds:

    def test_every_kind_has_a_status(self):
        assert set(HTTP_STATUS) == set(ErrorKind)

    def test_to_dict(self):
        error = InsufficientFunds(details={"account": "ABC1"})
        assert error.http_status == 402
        assert error.to_dict() == {
            "error": {"code": "INSUFFICIENT_FUNDS", "message": "Insufficient funds", "details": {"account": "ABC1"}}
        }

    def test_round_trip_by_code(self):
        for kind in ErrorKind:
            error = error_for_code(kind.value, "remote said no")
            assert isinstance(error, InterbankError)
            assert error.code == kind.value
            assert error.message == "remote said no"

    def test_specific_class(self):
        assert isinstance(error_for_code("TOKEN_EXPIRED"), TokenExpired)

    def test_unknown_code(self):
        error = error_for_code("SOMETHING_ELSE", "odd", {"status": 409})
        assert isinstance(error, DeliveryFailure)
        assert error.details == {"status": 409, "remote_code": "SOMETHING_ELSE"}

    def test_missing_code(self):
        error = error_for_code(None)
        assert isinstance(error, DeliveryFailure)
        assert error.message == DeliveryFailure.default_message
