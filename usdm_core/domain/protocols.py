"""
Domain protocols (interfaces) for dependency inversion.

The state core depends on these abstractions rather than on a concrete
exchange client, so tests can substitute mocks and other venues can plug
in their own transport.
"""
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from usdm_core.domain.events import ChangeNotification
from usdm_core.domain.models import ExchangeSnapshot, Order, SnapshotOrder, SubmitResult


@runtime_checkable
class Transport(Protocol):
    """
    Exchange transport boundary (consumed).

    Implemented by ``usdm_core.data.binance_client.BinanceUsdmTransport``.
    Implementations raise ``TransportFailure`` for network/exchange errors
    and return ``SubmitResult(accepted=False)`` for immediate rejections.
    Retry policy lives here, never in the core.
    """

    async def submit_order(self, order: Order) -> SubmitResult: ...

    async def cancel_order(self, order: Order) -> None: ...

    async def amend_order(
        self,
        order: Order,
        quantity: Optional[Decimal] = None,
        price: Optional[Decimal] = None,
    ) -> SubmitResult: ...

    async def fetch_snapshot(self) -> ExchangeSnapshot: ...

    async def fetch_order(self, order: Order) -> Optional[SnapshotOrder]:
        """Current exchange state of one order, None if the exchange has no record."""
        ...


ChangeListener = Callable[[ChangeNotification], Union[None, Awaitable[None]]]
