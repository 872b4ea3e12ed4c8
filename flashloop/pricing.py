#!/usr/bin/env python3
"""
Constant-product pricing (UniswapV2 / SushiSwap pairs)

⚡ Integer-only arithmetic, exactly as the pair contract settles:
    amountOut = amountIn * 997 * reserveOut / (reserveIn * 1000 + amountIn * 997)

Python ints are arbitrary precision, so uint112 * uint256 products never overflow.
"""

from typing import Iterable, List, Sequence, Tuple

# 0.3% pool fee
FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000

# (reserve_in, reserve_out) for one hop, already oriented for the swap direction
Hop = Tuple[int, int]


def get_amount_out(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_numerator: int = FEE_NUMERATOR,
    fee_denominator: int = FEE_DENOMINATOR,
) -> int:
    """
    Output of a single swap through a constant-product pool.

    Same rounding as UniswapV2Library.getAmountOut (floor division).
    An empty pool or a non-positive input quotes 0.
    """
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0

    amount_in_with_fee = amount_in * fee_numerator
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * fee_denominator + amount_in_with_fee
    return numerator // denominator


def get_amount_out_path(amount_in: int, hops: Iterable[Hop]) -> int:
    """Chain get_amount_out across hops, feeding each output into the next hop."""
    amount = amount_in
    for reserve_in, reserve_out in hops:
        amount = get_amount_out(amount, reserve_in, reserve_out)
    return amount


def reverse_hops(hops: Sequence[Hop]) -> List[Hop]:
    """
    Flip forward hops into the opposite swap direction.

    Hop order is reversed and each hop swaps which reserve is "in".
    """
    return [(reserve_out, reserve_in) for reserve_in, reserve_out in reversed(hops)]
