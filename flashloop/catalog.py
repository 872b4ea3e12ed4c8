#!/usr/bin/env python3
"""
Route catalog

Built once at startup from the pool configuration:
- validates token roles (exactly one source, exactly one target)
- resolves pool addresses (explicit, or CREATE2 from the router's factory)
- orients every pool so token0 sits on the source side of the route
- assembles direct (source -> target) and one-intermediate
  (source -> intermediate -> target) routes

The catalog is immutable; changing routes requires a restart.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from eth_abi.packed import encode_packed
from web3 import Web3

from .config_loader import (
    ROLE_INTERMEDIATE,
    ROLE_SOURCE,
    ROLE_TARGET,
    ConfigValidationError,
    PoolConfig,
    RouterConfig,
    TokenConfig,
)

logger = logging.getLogger(__name__)

# Tier of each role along a route, source side first
ROLE_RANK = {ROLE_SOURCE: 0, ROLE_INTERMEDIATE: 1, ROLE_TARGET: 2}

MIN_TOKENS = 2
MIN_POOLS = 2
MIN_ROUTES = 2


class RouteCatalogError(ConfigValidationError):
    """Invalid pool/route topology, fatal at startup"""
    pass


# ============================================
# Data Structures
# ============================================

@dataclass(frozen=True)
class Token:
    symbol: str
    address: str
    decimals: int
    role: str


@dataclass(frozen=True)
class Pool:
    """
    A pair contract, oriented along the route direction.

    token0 is the token nearer the source side, token1 the other one.
    reverse=True means the pair's raw reserve slot 0 holds token1.
    """
    address: str
    router_id: int
    token0: Token
    token1: Token
    reverse: bool


@dataclass(frozen=True)
class Route:
    """Token path (2 or 3 addresses) plus the pools it crosses, in path order"""
    path: Tuple[str, ...]
    router_id: int
    pools: Tuple[Pool, ...]

    def __post_init__(self):
        if len(self.path) not in (2, 3):
            raise RouteCatalogError(
                f"Route path must hold 2 or 3 tokens, got {len(self.path)}"
            )
        if len(self.pools) != len(self.path) - 1:
            raise RouteCatalogError(
                f"Route {self.path} needs {len(self.path) - 1} pools, got {len(self.pools)}"
            )

    @property
    def label(self) -> str:
        symbols = [self.pools[0].token0.symbol] + [p.token1.symbol for p in self.pools]
        return " -> ".join(symbols) + f" (router {self.router_id})"


@dataclass(frozen=True)
class RouteCatalog:
    source: Token
    target: Token
    intermediates: Tuple[Token, ...]
    pools: Tuple[Pool, ...]        # reserve read order
    routes: Tuple[Route, ...]

    @property
    def pool_addresses(self) -> List[str]:
        return [pool.address for pool in self.pools]


# ============================================
# Pair address derivation
# ============================================

def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    """Pair contracts store the lower address as token0"""
    if token_a.lower() == token_b.lower():
        raise RouteCatalogError(f"Identical pair tokens: {token_a}")
    if token_a.lower() < token_b.lower():
        return token_a, token_b
    return token_b, token_a


def compute_pair_address(
    token_a: str,
    token_b: str,
    factory: str,
    init_code_hash: str
) -> str:
    """
    Compute a UniswapV2-style pair address (CREATE2).

    salt = keccak256(abi.encodePacked(token0, token1))
    address = keccak256(0xff ++ factory ++ salt ++ init_code_hash)[12:]
    """
    token0, token1 = sort_tokens(token_a, token_b)

    salt = Web3.keccak(encode_packed(
        ["address", "address"],
        [Web3.to_checksum_address(token0), Web3.to_checksum_address(token1)]
    ))

    init_code = bytes.fromhex(init_code_hash[2:])
    create2_input = b"\xff" + bytes.fromhex(factory[2:]) + salt + init_code
    pair_address = Web3.keccak(create2_input)[-20:]

    return Web3.to_checksum_address("0x" + bytes(pair_address).hex())


# ============================================
# Catalog construction
# ============================================

def _build_tokens(tokens: Sequence[TokenConfig]) -> Tuple[Dict[str, Token], Token, Token]:
    if len(tokens) < MIN_TOKENS:
        raise RouteCatalogError(
            f"At least {MIN_TOKENS} tokens are required, got {len(tokens)}"
        )

    by_symbol: Dict[str, Token] = {}
    for cfg in tokens:
        if cfg.symbol in by_symbol:
            raise RouteCatalogError(f"Duplicate token symbol: {cfg.symbol}")
        by_symbol[cfg.symbol] = Token(cfg.symbol, cfg.address, cfg.decimals, cfg.role)

    sources = [t for t in by_symbol.values() if t.role == ROLE_SOURCE]
    targets = [t for t in by_symbol.values() if t.role == ROLE_TARGET]
    if len(sources) != 1:
        raise RouteCatalogError(
            f"Exactly one source token is required, got {len(sources)}"
        )
    if len(targets) != 1:
        raise RouteCatalogError(
            f"Exactly one target token is required, got {len(targets)}"
        )

    return by_symbol, sources[0], targets[0]


def _resolve_address(cfg: PoolConfig, token_a: Token, token_b: Token, router: RouterConfig) -> str:
    if cfg.address:
        return cfg.address

    if not router.factory or not router.init_code_hash:
        raise RouteCatalogError(
            f"Pool {token_a.symbol}/{token_b.symbol} has no address and router "
            f"{router.id} has no factory/init_code_hash to derive it"
        )

    address = compute_pair_address(
        token_a.address, token_b.address, router.factory, router.init_code_hash
    )
    logger.info(f"{token_a.symbol}/{token_b.symbol} ({router.name}): {address}")
    return address


def _build_pool(cfg: PoolConfig, tokens: Dict[str, Token], routers: Dict[int, RouterConfig]) -> Pool:
    for symbol in (cfg.token0, cfg.token1):
        if symbol not in tokens:
            raise RouteCatalogError(f"Pool references unknown token: {symbol}")
    if cfg.router not in routers:
        raise RouteCatalogError(
            f"Pool {cfg.token0}/{cfg.token1} references unknown router: {cfg.router}"
        )

    token0 = tokens[cfg.token0]
    token1 = tokens[cfg.token1]
    if ROLE_RANK[token0.role] == ROLE_RANK[token1.role]:
        raise RouteCatalogError(
            f"Pool {token0.symbol}/{token1.symbol} does not connect adjacent route tiers"
        )

    address = _resolve_address(cfg, token0, token1, routers[cfg.router])

    # Raw slot 0 holds the lower address unless the config says otherwise
    if cfg.reverse is None:
        reverse = token0.address.lower() > token1.address.lower()
    else:
        reverse = cfg.reverse

    # Re-orient target-first pools so token0 is on the source side
    if ROLE_RANK[token0.role] > ROLE_RANK[token1.role]:
        token0, token1 = token1, token0
        reverse = not reverse

    return Pool(
        address=address,
        router_id=cfg.router,
        token0=token0,
        token1=token1,
        reverse=reverse,
    )


def _assemble_routes(pools: List[Pool], source: Token, target: Token) -> List[Route]:
    routes: List[Route] = []

    for pool in pools:
        if pool.token0 != source:
            continue

        if pool.token1 == target:
            routes.append(Route(
                path=(source.address, target.address),
                router_id=pool.router_id,
                pools=(pool,),
            ))
            continue

        intermediate = pool.token1
        second: Optional[Pool] = next(
            (
                p for p in pools
                if p.token0 == intermediate
                and p.token1 == target
                and p.router_id == pool.router_id
            ),
            None,
        )
        if second is None:
            logger.warning(
                f"No {intermediate.symbol}/{target.symbol} pool on router "
                f"{pool.router_id}, skipping route via {intermediate.symbol}"
            )
            continue

        routes.append(Route(
            path=(source.address, intermediate.address, target.address),
            router_id=pool.router_id,
            pools=(pool, second),
        ))

    return routes


def build_route_catalog(
    tokens: Sequence[TokenConfig],
    pools: Sequence[PoolConfig],
    routers: Sequence[RouterConfig],
) -> RouteCatalog:
    """
    Validate the configured topology and build the immutable route catalog.

    Raises:
        RouteCatalogError: on any missing role, unknown reference,
            underivable pool address or too few routes
    """
    by_symbol, source, target = _build_tokens(tokens)

    if len(pools) < MIN_POOLS:
        raise RouteCatalogError(
            f"At least {MIN_POOLS} pools are required, got {len(pools)}"
        )

    router_map = {router.id: router for router in routers}
    built = [_build_pool(cfg, by_symbol, router_map) for cfg in pools]

    routes = _assemble_routes(built, source, target)
    if len(routes) < MIN_ROUTES:
        raise RouteCatalogError(
            f"At least {MIN_ROUTES} routes are required to compare, got {len(routes)}"
        )

    # Unique pools in first-use order; this is the reserve read order
    ordered: List[Pool] = []
    for route in routes:
        for pool in route.pools:
            if pool not in ordered:
                ordered.append(pool)

    unused = [p for p in built if p not in ordered]
    for pool in unused:
        logger.warning(
            f"Pool {pool.token0.symbol}/{pool.token1.symbol} ({pool.address}) is not on any route"
        )

    return RouteCatalog(
        source=source,
        target=target,
        intermediates=tuple(t for t in by_symbol.values() if t.role == ROLE_INTERMEDIATE),
        pools=tuple(ordered),
        routes=tuple(routes),
    )
