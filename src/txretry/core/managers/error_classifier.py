"""ErrorClassifier: maps raw session/unit-of-work errors to an ErrorKind.

Classification is driven by the SQLSTATE taxonomy and by exception types,
never by message text (messages differ between database versions and
drivers). The classifier walks the exception chain so that database errors
wrapped by SQLAlchemy (`orig`) or re-raised by application code
(`raise ... from exc`) are still recognised.

Precedence:
1. SessionAcquisitionError anywhere at the top -> resource_broken
2. a driver flag saying the connection was invalidated -> resource_broken
3. the first SQLSTATE found in the chain decides
4. configured "broken" exception types without a SQLSTATE -> resource_broken
5. everything else -> fatal
"""

from __future__ import annotations

from typing import FrozenSet, Iterator, Optional, Tuple, Type

from txretry.core.exceptions import SessionAcquisitionError
from txretry.core.models.attempt import ErrorKind, ErrorRecord

# serialization_failure (CockroachDB: TransactionRetryWithProtoRefreshError), deadlock_detected
RETRYABLE_SQLSTATES: FrozenSet[str] = frozenset({"40001", "40P01"})

# SQLSTATE classes whose every code means the connection is gone
BROKEN_SQLSTATE_CLASSES: FrozenSet[str] = frozenset({"08"})

BROKEN_SQLSTATES: FrozenSet[str] = frozenset(
    {
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
        "53300",  # too_many_connections
    }
)

DEFAULT_BROKEN_TYPES: Tuple[Type[BaseException], ...] = (
    SessionAcquisitionError,
    ConnectionError,
    TimeoutError,
)

_SQLSTATE_ATTRIBUTES = ("sqlstate", "pgcode")


def iter_error_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield `error` followed by its wrapped/causing errors, each once."""
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop(0)
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException):
            pending.append(orig)
        if current.__cause__ is not None:
            pending.append(current.__cause__)
        elif current.__context__ is not None and not current.__suppress_context__:
            pending.append(current.__context__)


def extract_sqlstate(error: BaseException) -> Optional[str]:
    """Return the first five-character SQLSTATE found in the chain."""
    for err in iter_error_chain(error):
        for attr in _SQLSTATE_ATTRIBUTES:
            code = getattr(err, attr, None)
            if isinstance(code, str) and len(code) == 5:
                return code.upper()
    return None


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    if not text:
        return type(error).__name__
    return f"{type(error).__name__}: {text.splitlines()[0]}"


class ErrorClassifier:
    """Pure, stateless error classifier.

    Args:
        retryable_sqlstates: Codes that signal an aborted, effect-free transaction
        broken_sqlstates: Codes that signal an unusable session
        broken_sqlstate_classes: Two-character SQLSTATE classes treated as broken
        broken_types: Exception types (without SQLSTATE) treated as broken;
            driver adapters export their own tuples to extend the defaults
    """

    def __init__(
        self,
        retryable_sqlstates: FrozenSet[str] = RETRYABLE_SQLSTATES,
        broken_sqlstates: FrozenSet[str] = BROKEN_SQLSTATES,
        broken_sqlstate_classes: FrozenSet[str] = BROKEN_SQLSTATE_CLASSES,
        broken_types: Tuple[Type[BaseException], ...] = DEFAULT_BROKEN_TYPES,
    ) -> None:
        self._retryable = frozenset(c.upper() for c in retryable_sqlstates)
        self._broken = frozenset(c.upper() for c in broken_sqlstates)
        self._broken_classes = frozenset(c.upper() for c in broken_sqlstate_classes)
        self._broken_types = tuple(broken_types)

    def with_broken_types(self, *types: Type[BaseException]) -> "ErrorClassifier":
        """Return a classifier that additionally treats `types` as broken."""
        return ErrorClassifier(
            retryable_sqlstates=self._retryable,
            broken_sqlstates=self._broken,
            broken_sqlstate_classes=self._broken_classes,
            broken_types=self._broken_types + tuple(types),
        )

    def kind_for_sqlstate(self, sqlstate: str) -> ErrorKind:
        code = sqlstate.upper()
        if code in self._retryable:
            return ErrorKind.retryable
        if code in self._broken or code[:2] in self._broken_classes:
            return ErrorKind.resource_broken
        return ErrorKind.fatal

    def classify(self, error: BaseException) -> ErrorRecord:
        sqlstate = extract_sqlstate(error)
        return ErrorRecord(
            kind=self._kind(error, sqlstate),
            message=_describe(error),
            cause=error,
            sqlstate=sqlstate,
        )

    def _kind(self, error: BaseException, sqlstate: Optional[str]) -> ErrorKind:
        if isinstance(error, SessionAcquisitionError):
            return ErrorKind.resource_broken
        chain = list(iter_error_chain(error))
        if any(getattr(err, "connection_invalidated", False) is True for err in chain):
            return ErrorKind.resource_broken
        if sqlstate is not None:
            return self.kind_for_sqlstate(sqlstate)
        if any(isinstance(err, self._broken_types) for err in chain):
            return ErrorKind.resource_broken
        return ErrorKind.fatal


default_classifier = ErrorClassifier()


def classify(error: BaseException) -> ErrorRecord:
    """Classify `error` with the default SQLSTATE taxonomy."""
    return default_classifier.classify(error)
