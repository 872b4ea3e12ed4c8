"""
Tests for constant-product pricing.

Validates:
1. The exact on-chain rounding (996 case)
2. Fee makes the output strictly smaller than the proportional output
3. Monotonicity in amount_in, reserve_in and reserve_out
4. No round-trip profit against a single pool
"""

import pytest

from flashloop.pricing import get_amount_out, get_amount_out_path, reverse_hops

CASES = [
    (1_000, 1_000_000, 1_000_000),
    (1, 10**6, 10**18),
    (10**9, 5 * 10**12, 3 * 10**21),
    (123_456_789, 987_654_321, 111_111_111),
    (10**30, 10**30, 10**30),
]


def test_concrete_case():
    assert get_amount_out(1_000, 1_000_000, 1_000_000) == 996


def test_formula_matches_pair_contract():
    amount_in, reserve_in, reserve_out = 5_000_000, 2_000_000_000, 7_000_000_000_000
    expected = (amount_in * 997 * reserve_out) // (reserve_in * 1000 + amount_in * 997)
    assert get_amount_out(amount_in, reserve_in, reserve_out) == expected


@pytest.mark.parametrize("amount_in,reserve_in,reserve_out", CASES)
def test_output_below_proportional(amount_in, reserve_in, reserve_out):
    out = get_amount_out(amount_in, reserve_in, reserve_out)
    # out < amount_in * reserve_out / reserve_in, kept in integers
    assert out * reserve_in < amount_in * reserve_out


@pytest.mark.parametrize("amount_in,reserve_in,reserve_out", CASES)
def test_monotonic(amount_in, reserve_in, reserve_out):
    base = get_amount_out(amount_in, reserve_in, reserve_out)
    scale = 2

    assert get_amount_out(amount_in * scale, reserve_in, reserve_out) >= base
    assert get_amount_out(amount_in, reserve_in, reserve_out * scale) >= base
    assert get_amount_out(amount_in, reserve_in * scale, reserve_out) <= base


def test_strictly_monotonic_away_from_rounding():
    base = get_amount_out(10**12, 10**15, 10**15)
    assert get_amount_out(2 * 10**12, 10**15, 10**15) > base
    assert get_amount_out(10**12, 10**15, 2 * 10**15) > base
    assert get_amount_out(10**12, 2 * 10**15, 10**15) < base


@pytest.mark.parametrize("amount_in,reserve_in,reserve_out", CASES)
def test_no_round_trip_profit(amount_in, reserve_in, reserve_out):
    out = get_amount_out(amount_in, reserve_in, reserve_out)
    back = get_amount_out(out, reserve_out, reserve_in)
    assert back < amount_in


@pytest.mark.parametrize("amount_in,reserve_in,reserve_out", [
    (0, 1_000, 1_000),
    (-5, 1_000, 1_000),
    (100, 0, 1_000),
    (100, 1_000, 0),
])
def test_degenerate_inputs_quote_zero(amount_in, reserve_in, reserve_out):
    assert get_amount_out(amount_in, reserve_in, reserve_out) == 0


def test_path_chains_hops():
    first = get_amount_out(1_000, 1_000_000, 2_000_000)
    second = get_amount_out(first, 3_000_000, 1_500_000)
    assert get_amount_out_path(1_000, [(1_000_000, 2_000_000), (3_000_000, 1_500_000)]) == second


def test_empty_path_returns_input():
    assert get_amount_out_path(42, []) == 42


def test_reverse_hops():
    hops = [(1, 2), (3, 4)]
    assert reverse_hops(hops) == [(4, 3), (2, 1)]
    assert reverse_hops(reverse_hops(hops)) == hops
