"""SessionProviderPort: hexagonal port for handing out transactional sessions.

The executor asks for a brand-new session before every attempt and gives it
back exactly once afterwards. Providers may pool underlying connections;
`broken=True` tells them not to put the session back into circulation.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Generic, TypeVar

S = TypeVar("S")
T = TypeVar("T")

# A unit of work begins, reads/writes and commits on the session it is handed.
UnitOfWork = Callable[[S], Awaitable[T]]


class SessionProviderPort(ABC, Generic[S]):
	"""Port abstraction for a (possibly pooled) source of sessions."""

	name: str = "session-provider"

	@abstractmethod
	async def acquire(self) -> S:
		"""Return a fresh session.

		Raises:
			SessionAcquisitionError: when no usable session is available.
		"""
		raise NotImplementedError

	@abstractmethod
	async def release(self, session: S, broken: bool = False) -> None:
		"""Give a session back; discard it instead of reusing when `broken`."""
		raise NotImplementedError
