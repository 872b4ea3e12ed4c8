#!/usr/bin/env python3
"""
Arbitrage selection

Sorts one block's route quotes and checks the round trip between the two
extremes:
- the route yielding the most target token is the sell leg (forward path)
- the route yielding the least is the cheapest place to buy the target token
  back, so it is run in reverse over its own oriented reserves

net_result = reverse_conversion(best.amount_out) - debt

Only the global max/min pair is compared, and gas cost is not part of
net_result.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .pricing import get_amount_out_path, reverse_hops
from .quotes import RouteQuote

BPS_DENOMINATOR = 10_000


class ArbitrageError(Exception):
    """Not enough quotes to compare"""
    pass


@dataclass(frozen=True)
class ArbitrageDecision:
    """Outcome of comparing the extremal quotes of one block"""
    net_result: int
    sell_path: Tuple[str, ...]       # contract path0
    sell_router: int
    buy_path: Tuple[str, ...]        # contract path1, already reversed
    buy_router: int
    sell_amount: int                 # target token obtained on the sell leg
    repaid_amount: int               # source token obtained back on the buy leg

    def profitable(self, floor: int) -> bool:
        return self.net_result >= floor


def compute_debt(amount: int, premium_bps: int) -> int:
    """Flash loan repayment: amount + amount * premium_bps / 10000 (floored)"""
    premium = amount * premium_bps // BPS_DENOMINATOR
    return amount + premium


def profit_floor(decimals: int) -> int:
    """One whole source token in base units"""
    return 10 ** decimals


def reverse_conversion(quote: RouteQuote, amount_in: int) -> int:
    """Convert target token back to source token along the quote's route, reversed"""
    return get_amount_out_path(amount_in, reverse_hops(quote.hops))


def sort_quotes(quotes: Sequence[RouteQuote]) -> List[RouteQuote]:
    """Ascending by amount_out; stable on ties"""
    return sorted(quotes, key=lambda q: q.amount_out)


def select_arbitrage(quotes: Sequence[RouteQuote], debt: int) -> ArbitrageDecision:
    """
    Pick the sell (max output) and buy (min output) legs and compute the net result.

    Raises:
        ArbitrageError: fewer than two quotes
    """
    if len(quotes) < 2:
        raise ArbitrageError(f"Need at least 2 route quotes, got {len(quotes)}")

    ordered = sort_quotes(quotes)
    worst = ordered[0]
    best = ordered[-1]

    repaid = reverse_conversion(worst, best.amount_out)

    return ArbitrageDecision(
        net_result=repaid - debt,
        sell_path=best.path,
        sell_router=best.router_id,
        buy_path=tuple(reversed(worst.path)),
        buy_router=worst.router_id,
        sell_amount=best.amount_out,
        repaid_amount=repaid,
    )
