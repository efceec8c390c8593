import psycopg2
import pytest
from sqlalchemy.exc import OperationalError as SAOperationalError

from txretry.adapters.session_provider_inmemory import SerializationFailure, SessionClosedError
from txretry.adapters.session_provider_psycopg2 import PSYCOPG2_BROKEN_TYPES
from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.managers.error_classifier import (
    ErrorClassifier,
    classify,
    default_classifier,
    extract_sqlstate,
    iter_error_chain,
)
from txretry.core.models.attempt import ErrorKind

from fakes import SqlStateError


class TestSqlState:
    @pytest.mark.parametrize("code", ["40001", "40P01", "40p01"])
    def test_serialization_and_deadlock_are_retryable(self, code):
        record = classify(SqlStateError(code))

        assert record.kind is ErrorKind.retryable
        assert record.sqlstate == code.upper()

    @pytest.mark.parametrize("code", ["08006", "08003", "57P01", "57P02", "57P03", "53300"])
    def test_connection_codes_are_broken(self, code):
        assert classify(SqlStateError(code)).kind is ErrorKind.resource_broken

    @pytest.mark.parametrize("code", ["23505", "42601", "22012", "42P01"])
    def test_other_codes_are_fatal(self, code):
        assert classify(SqlStateError(code)).kind is ErrorKind.fatal

    def test_store_conflict_is_retryable(self):
        assert classify(SerializationFailure("restart")).kind is ErrorKind.retryable

    def test_malformed_code_is_ignored(self):
        error = SqlStateError("4000")

        assert extract_sqlstate(error) is None
        assert classify(error).kind is ErrorKind.fatal


class TestTypes:
    @pytest.mark.parametrize("error", [ValueError("x"), KeyError("k"), RuntimeError("boom")])
    def test_plain_errors_are_fatal(self, error):
        assert classify(error).kind is ErrorKind.fatal

    @pytest.mark.parametrize(
        "error",
        [ConnectionError("reset by peer"), TimeoutError(), SessionClosedError("closed")],
    )
    def test_connection_errors_are_broken(self, error):
        assert classify(error).kind is ErrorKind.resource_broken

    def test_acquisition_failure_wins_over_sqlstate(self):
        try:
            try:
                raise SqlStateError("28P01", "password authentication failed")
            except SqlStateError as exc:
                raise SessionAcquisitionError("cannot connect") from exc
        except SessionAcquisitionError as exc:
            error = exc

        assert classify(error).kind is ErrorKind.resource_broken

    def test_message_text_is_not_used(self):
        error = RuntimeError("ERROR: restart transaction (SQLSTATE 40001)")

        assert classify(error).kind is ErrorKind.fatal


class TestChain:
    def test_explicit_cause_is_followed(self):
        try:
            try:
                raise SqlStateError("40001")
            except SqlStateError as exc:
                raise RuntimeError("transfer failed") from exc
        except RuntimeError as exc:
            error = exc

        record = classify(error)

        assert record.kind is ErrorKind.retryable
        assert record.sqlstate == "40001"
        assert record.cause is error
        assert record.message == "RuntimeError: transfer failed"

    def test_implicit_context_is_followed(self):
        try:
            try:
                raise SqlStateError("40001")
            except SqlStateError:
                raise RuntimeError("while handling")
        except RuntimeError as exc:
            error = exc

        assert classify(error).kind is ErrorKind.retryable

    def test_suppressed_context_is_not_followed(self):
        try:
            try:
                raise SqlStateError("40001")
            except SqlStateError:
                raise ValueError("hidden") from None
        except ValueError as exc:
            error = exc

        assert classify(error).kind is ErrorKind.fatal

    def test_sqlalchemy_wrapper_exposes_orig(self):
        error = SAOperationalError("UPDATE accounts", {}, SqlStateError("40001"))

        assert classify(error).kind is ErrorKind.retryable

    def test_invalidated_connection_is_broken(self):
        error = SAOperationalError(
            "SELECT 1", {}, SqlStateError("40001"), connection_invalidated=True
        )

        assert classify(error).kind is ErrorKind.resource_broken

    def test_chain_is_finite_for_cycles(self):
        a = RuntimeError("a")
        b = RuntimeError("b")
        a.__cause__ = b
        b.__cause__ = a

        assert list(iter_error_chain(a)) == [a, b]


class TestDriverTypes:
    def test_psycopg2_operational_error_without_code_is_fatal_by_default(self):
        assert default_classifier.classify(psycopg2.OperationalError("closed")).kind is ErrorKind.fatal

    def test_driver_broken_types_extend_defaults(self):
        classifier = default_classifier.with_broken_types(*PSYCOPG2_BROKEN_TYPES)

        assert classifier.classify(psycopg2.OperationalError("closed")).kind is ErrorKind.resource_broken
        assert classifier.classify(psycopg2.InterfaceError("gone")).kind is ErrorKind.resource_broken
        assert classifier.classify(ConnectionError()).kind is ErrorKind.resource_broken
        assert classifier.classify(ValueError()).kind is ErrorKind.fatal

    def test_sqlstate_beats_broken_type(self):
        classifier = ErrorClassifier(broken_types=(SqlStateError,))

        assert classifier.classify(SqlStateError("40001")).kind is ErrorKind.retryable

    def test_custom_retryable_codes(self):
        classifier = ErrorClassifier(retryable_sqlstates=frozenset({"40001", "55P03"}))

        assert classifier.kind_for_sqlstate("55P03") is ErrorKind.retryable
        assert classifier.kind_for_sqlstate("40P01") is ErrorKind.fatal
