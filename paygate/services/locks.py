"""
Per-invoice exclusive sections.

In-process asyncio locks keyed by invoice id. Cross-process exclusion comes
from the SELECT ... FOR UPDATE the reconciler takes on the invoice row.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID


class InvoiceLocks:
    """Keyed lock registry; entries are dropped when no coroutine holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._users: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, invoice_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(invoice_id, asyncio.Lock())
        self._users[invoice_id] = self._users.get(invoice_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[invoice_id] -= 1
            if self._users[invoice_id] == 0:
                del self._users[invoice_id]
                del self._locks[invoice_id]

    def __len__(self) -> int:
        return len(self._locks)
