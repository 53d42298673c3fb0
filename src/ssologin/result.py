"""Two-variant result value for outcomes that must not raise across an await.

The loopback server settles its pending flow with a :class:`Result` instead
of an exception so that protocol failures (bad state, missing code, provider
error) reach the waiting caller as data::

    result = await server.wait_for_authorization()
    if result.is_ok:
        code = result.value
    else:
        raise result.error
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either ``ok(value)`` or ``err(error)``; never both."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @classmethod
    def ok(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def err(cls, error: BaseException) -> Result[T]:
        return cls(error=error)

    @property
    def is_ok(self) -> bool:
        return self.error is None

    @property
    def is_err(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the ok value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
