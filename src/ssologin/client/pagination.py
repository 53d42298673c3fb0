"""Lazy, forward-only pagination over continuation-token APIs."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

PageFetcher = Callable[[Optional[str]], Awaitable[dict[str, Any]]]


class AsyncPager(Generic[T]):
    """Async iterator over result pages, following ``nextToken`` until absent.

    Each iteration step issues one request. Pages whose item list is absent
    or null are skipped; the others are passed through *transform* (which
    validates the items) and yielded as lists. A pager can be iterated only
    once.

    Args:
        fetch: Coroutine function called with the continuation token
            (``None`` for the first page) that returns the decoded body.
        items_key: Body field holding the page's items, e.g. ``"accountList"``.
        transform: Converts the raw item list into the yielded page.
        token_key: Body field holding the continuation token.

    Example::

        async for page in client.list_accounts():
            for account in page:
                print(account.account_id)
    """

    def __init__(
        self,
        fetch: PageFetcher,
        items_key: str,
        transform: Callable[[list[Any]], list[T]],
        token_key: str = "nextToken",
    ) -> None:
        self._fetch = fetch
        self._items_key = items_key
        self._transform = transform
        self._token_key = token_key
        self._started = False

    def __aiter__(self) -> AsyncIterator[list[T]]:
        if self._started:
            raise RuntimeError("AsyncPager is forward-only and cannot be restarted")
        self._started = True
        return self._pages()

    async def _pages(self) -> AsyncIterator[list[T]]:
        token: Optional[str] = None
        while True:
            body = await self._fetch(token)
            items = body.get(self._items_key)
            if items is not None:
                yield self._transform(items)
            token = body.get(self._token_key)
            if not token:
                return

    async def flatten(self) -> list[T]:
        """Consume every page and return the concatenated items."""
        return [item async for page in self for item in page]
