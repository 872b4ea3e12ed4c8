#!/usr/bin/env python3
"""
Route quoting

One block's reserve batch -> typed PoolReserves -> one RouteQuote per route.

The batch is positional: entry i belongs to catalog.pools[i]. The decode step
checks the length and keys every entry by pool address, so the quoting code
never indexes the raw batch.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .catalog import Pool, Route, RouteCatalog
from .pricing import Hop, get_amount_out_path


class SnapshotError(Exception):
    """Reserve batch does not match the catalog"""
    pass


@dataclass(frozen=True)
class PoolReserves:
    """Decoded getReserves() result for one pair"""
    address: str
    reserve0: int
    reserve1: int
    timestamp: int = 0

    def oriented(self, pool: Pool) -> Tuple[int, int]:
        """(reserve of pool.token0, reserve of pool.token1)"""
        if pool.reverse:
            return self.reserve1, self.reserve0
        return self.reserve0, self.reserve1


@dataclass(frozen=True)
class RouteQuote:
    """
    Forward quote of a route for one block.

    hops holds the (reserve_in, reserve_out) pairs already oriented in the
    source -> target direction, enough to run the same route backwards.
    """
    route: Route
    amount_in: int
    amount_out: int
    hops: Tuple[Hop, ...]

    @property
    def path(self) -> Tuple[str, ...]:
        return self.route.path

    @property
    def router_id(self) -> int:
        return self.route.router_id


def decode_snapshot(
    catalog: RouteCatalog,
    raw: Sequence[Optional[Tuple[int, ...]]],
) -> Dict[str, PoolReserves]:
    """
    Key a positional reserve batch by pool address.

    Each entry is (reserve0, reserve1[, timestamp]) or None for a failed read.

    Raises:
        SnapshotError: length mismatch or a failed entry
    """
    if len(raw) != len(catalog.pools):
        raise SnapshotError(
            f"Reserve batch has {len(raw)} entries, catalog has {len(catalog.pools)} pools"
        )

    reserves: Dict[str, PoolReserves] = {}
    for pool, entry in zip(catalog.pools, raw):
        if entry is None:
            raise SnapshotError(f"getReserves() failed for {pool.address}")
        if len(entry) < 2:
            raise SnapshotError(f"Malformed reserves for {pool.address}: {entry!r}")

        reserves[pool.address] = PoolReserves(
            address=pool.address,
            reserve0=int(entry[0]),
            reserve1=int(entry[1]),
            timestamp=int(entry[2]) if len(entry) > 2 else 0,
        )
    return reserves


class QuoteBuilder:
    """
    Quotes every catalog route for a fixed input amount.

    Stateless between blocks; nothing is cached.
    """

    def __init__(self, catalog: RouteCatalog, amount_in: int):
        if amount_in <= 0:
            raise ValueError(f"amount_in must be positive, got {amount_in}")
        self.catalog = catalog
        self.amount_in = amount_in

    def decode(self, raw: Sequence[Optional[Tuple[int, ...]]]) -> Dict[str, PoolReserves]:
        return decode_snapshot(self.catalog, raw)

    def quote_route(self, route: Route, reserves: Dict[str, PoolReserves]) -> RouteQuote:
        hops = []
        for pool in route.pools:
            try:
                pool_reserves = reserves[pool.address]
            except KeyError:
                raise SnapshotError(f"No reserves for pool {pool.address}")
            hops.append(pool_reserves.oriented(pool))

        return RouteQuote(
            route=route,
            amount_in=self.amount_in,
            amount_out=get_amount_out_path(self.amount_in, hops),
            hops=tuple(hops),
        )

    def build(self, reserves: Dict[str, PoolReserves]) -> List[RouteQuote]:
        """One quote per route, in catalog route order"""
        return [self.quote_route(route, reserves) for route in self.catalog.routes]

    def build_from_batch(self, raw: Sequence[Optional[Tuple[int, ...]]]) -> List[RouteQuote]:
        return self.build(self.decode(raw))
