"""
price_feed.py - Price feed consumed by externally priced loans

Provides the price lookup the engine consumes for externally priced assets.

Classes:
- PriceFeed: Protocol defining the feed interface
- StaticPriceFeed: Prices set explicitly, each with its observation timestamp
- TimeSeriesPriceFeed: Historical observations, read as of the clock's now

A feed returns (price, timestamp): the price and the instant it was observed.
The engine uses the timestamp to decide whether a price is outdated.
"""

from __future__ import annotations
from bisect import bisect_right
from datetime import datetime
from decimal import Decimal
from typing import Dict, Hashable, List, Optional, Protocol, Tuple, runtime_checkable

from .core import Clock, PoolId, PriceId, PriceNotFound, to_decimal


@runtime_checkable
class PriceFeed(Protocol):
    """
    Protocol for price feeds.

    get() must raise PriceNotFound when no price is available.
    """

    def get(self, price_id: PriceId) -> Tuple[Decimal, datetime]:
        """Latest (price, observation timestamp) of a price id."""
        ...

    def register_id(self, price_id: PriceId, pool_id: PoolId) -> None:
        """Declare that a pool depends on a price id."""
        ...

    def unregister_id(self, price_id: PriceId, pool_id: PoolId) -> None:
        """Release a dependency taken by register_id()."""
        ...


class _Registrations:
    """Reference-counted (price_id, pool_id) registrations shared by the feeds."""

    def __init__(self):
        self.registrations: Dict[Tuple[Hashable, Hashable], int] = {}

    def register_id(self, price_id: PriceId, pool_id: PoolId) -> None:
        key = (price_id, pool_id)
        self.registrations[key] = self.registrations.get(key, 0) + 1

    def unregister_id(self, price_id: PriceId, pool_id: PoolId) -> None:
        key = (price_id, pool_id)
        count = self.registrations.get(key, 0)
        if count == 0:
            raise PriceNotFound(f"Price {price_id!r} is not registered for pool {pool_id!r}")
        if count == 1:
            del self.registrations[key]
        else:
            self.registrations[key] = count - 1

    def is_registered(self, price_id: PriceId, pool_id: PoolId) -> bool:
        return (price_id, pool_id) in self.registrations


class StaticPriceFeed(_Registrations):
    """
    Price feed with explicitly set prices.

    Each price keeps the timestamp it was set with; the feed never ages
    prices on its own.
    """

    def __init__(self, prices: Optional[Dict[PriceId, Tuple[Decimal, datetime]]] = None):
        """
        Initialize with a static price map.

        Args:
            prices: Dictionary mapping price ids to (price, timestamp) pairs
        """
        super().__init__()
        self.prices: Dict[PriceId, Tuple[Decimal, datetime]] = {}
        for price_id, (price, timestamp) in (prices or {}).items():
            self.set_price(price_id, price, timestamp)

    def set_price(self, price_id: PriceId, price: Decimal, timestamp: datetime) -> None:
        """Set (or replace) the price of an asset."""
        self.prices[price_id] = (to_decimal(price, "price"), timestamp)

    def get(self, price_id: PriceId) -> Tuple[Decimal, datetime]:
        try:
            return self.prices[price_id]
        except KeyError:
            raise PriceNotFound(f"No price for {price_id!r}") from None

    def __repr__(self):
        return f"StaticPriceFeed({len(self.prices)} prices)"


class TimeSeriesPriceFeed(_Registrations):
    """
    Price feed backed by historical observations.

    get() returns the most recent observation at or before the clock's
    current instant, so the same feed serves every point of a simulation.
    """

    def __init__(
        self,
        clock: Clock,
        price_paths: Optional[Dict[PriceId, List[Tuple[datetime, Decimal]]]] = None,
    ):
        """
        Initialize the feed.

        Args:
            clock: Source of the instant prices are read at
            price_paths: Optional dict mapping price ids to lists of (timestamp, price)

        Examples:
            feed = TimeSeriesPriceFeed(clock, {
                'BOND-A': [(t0, 100), (t1, 101)],
            })
            feed.add_price('BOND-B', t0, 98)
        """
        super().__init__()
        self.clock = clock
        self.price_history: Dict[PriceId, List[Tuple[datetime, Decimal]]] = {}
        for price_id, path in (price_paths or {}).items():
            for timestamp, price in path:
                self.add_price(price_id, timestamp, price)

    def add_price(self, price_id: PriceId, timestamp: datetime, price: Decimal) -> None:
        history = self.price_history.setdefault(price_id, [])
        history.append((timestamp, to_decimal(price, "price")))
        history.sort(key=lambda x: x[0])

    def get(self, price_id: PriceId) -> Tuple[Decimal, datetime]:
        history = self.price_history.get(price_id)
        if not history:
            raise PriceNotFound(f"No price for {price_id!r}")

        # Rightmost observation with ts <= now
        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, self.clock.now())
        if idx == 0:
            raise PriceNotFound(f"No price for {price_id!r} at or before {self.clock.now()}")

        timestamp, price = history[idx - 1]
        return price, timestamp

    def __repr__(self):
        return f"TimeSeriesPriceFeed({len(self.price_history)} series)"
