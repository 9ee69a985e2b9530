"""
dex_sources.py
===============
Market data source adapters for Algorand DEXes.

Each adapter calls one public HTTP API and maps its response into
``PriceRecord`` objects.  Adapters do not retry: any network error, timeout,
unexpected response shape, or a requested pair missing from the response
raises ``SourceUnavailable`` for the whole call.  Retries, backoff and
substitute data are the fallback manager's job.

The timeout bounds a whole ``fetch``: adapters that make one request per
pair share a single deadline across those requests.

Price sources (no auth required):
  - Tinyman:  GET {base}/pools?asset_1=<id>&asset_2=<id>   (AMM reserves)
  - Pact:     GET {base}/pairs                              (all pairs)
  - AlgoFi:   GET {base}/markets                            (lending markets)
  - Vestige:  GET {base}/<asset_id>/price                   (aggregated)
  - Defily:   GET {base}/pools                              (all pools)

Pool sources for yield farming: Tinyman analytics, Pact, AlgoFi, Folks Finance.

Pair names are "BASE/QUOTE" using asset unit names (ALGO, USDC, STBL, ...).
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from config import API, ASSET_IDS, DEX_FEES, HTTP, POOL_API, get_logger
from models import PoolInfo, PriceRecord, SourceUnavailable, utc_now

logger = get_logger(__name__)

_PARSE_ERRORS = (KeyError, TypeError, ValueError, IndexError, AttributeError)


# ---------------------------------------------------------------------------
# HTTP HELPERS
# ---------------------------------------------------------------------------


def _get(
    source: str,
    url: str,
    params: Optional[Dict] = None,
    timeout: Optional[float] = None,
) -> Tuple[Any, float]:
    """Single GET with latency measurement. Returns (data, latency_ms)."""
    headers = {"User-Agent": HTTP["user_agent"]}
    try:
        t0 = time.perf_counter()
        resp = requests.get(
            url, params=params, headers=headers,
            timeout=timeout if timeout is not None else HTTP["timeout"],
        )
        latency_ms = (time.perf_counter() - t0) * 1000
        resp.raise_for_status()
        return resp.json(), latency_ms
    except requests.exceptions.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else 0
        raise SourceUnavailable(source, f"HTTP {status} on {url}") from exc
    except requests.exceptions.RequestException as exc:
        raise SourceUnavailable(source, f"request error on {url}: {exc}") from exc
    except ValueError as exc:
        raise SourceUnavailable(source, f"invalid JSON from {url}: {exc}") from exc


def split_pair(pair_symbol: str) -> Tuple[str, str]:
    """'ALGO/USDC' -> ('ALGO', 'USDC')."""
    parts = pair_symbol.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid asset pair format: {pair_symbol!r}")
    return parts[0].upper(), parts[1].upper()


def get_asset_id(symbol: str) -> str:
    return ASSET_IDS.get(symbol.upper(), symbol)


def get_asset_symbol(asset_id: Any) -> str:
    asset_id = str(asset_id)
    for sym, aid in ASSET_IDS.items():
        if aid == asset_id:
            return sym
    return asset_id


def _as_list(data: Any) -> List[Dict[str, Any]]:
    """Accept either a bare JSON list or a ``{"results": [...]}`` envelope."""
    if isinstance(data, dict):
        data = data.get("results", data.get("data", []))
    if not isinstance(data, list):
        raise TypeError(f"expected a list, got {type(data).__name__}")
    return data


# ---------------------------------------------------------------------------
# PRICE ADAPTERS
# ---------------------------------------------------------------------------


class DexSource:
    """
    Base adapter.

    Subclasses implement ``_fetch(pairs, deadline)`` returning
    ``{pair: PriceRecord}`` and pass ``deadline`` to every ``_get``;
    ``fetch`` turns parse errors and missing pairs into ``SourceUnavailable``.
    """

    name: str = ""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.base_url = (base_url or API[self.name]).rstrip("/")
        self.timeout = timeout if timeout is not None else HTTP["timeout"]
        self.fee = DEX_FEES.get(self.name, DEX_FEES["default"])

    def fetch(self, pair_symbols: Iterable[str]) -> List[PriceRecord]:
        pairs = sorted(set(pair_symbols))
        if not pairs:
            return []
        try:
            found = self._fetch(pairs, time.monotonic() + self.timeout)
        except _PARSE_ERRORS as exc:
            raise SourceUnavailable(self.name, f"unexpected response: {exc!r}") from exc

        missing = [p for p in pairs if p not in found]
        if missing:
            raise SourceUnavailable(self.name, f"no data for {', '.join(missing)}")
        logger.debug("%s: %d price records", self.name, len(found))
        return [found[p] for p in pairs]

    def _fetch(self, pairs: List[str], deadline: float) -> Dict[str, PriceRecord]:
        raise NotImplementedError

    def _get(self, path: str, deadline: float, params: Optional[Dict] = None) -> Any:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SourceUnavailable(self.name, f"{self.timeout:g}s deadline exceeded before {path}")
        data, latency = _get(
            self.name, f"{self.base_url}{path}", params=params, timeout=min(self.timeout, remaining)
        )
        logger.debug("%s %s fetched in %.0fms", self.name, path, latency)
        return data

    def _record(
        self, pair: str, price: Any, volume: Any = 0.0, liquidity: Any = 0.0
    ) -> PriceRecord:
        price = float(price)
        if price <= 0:
            raise ValueError(f"non-positive price {price} for {pair}")
        return PriceRecord(
            pair_symbol=pair,
            source=self.name,
            price=price,
            volume_24h=float(volume or 0.0),
            fee=self.fee,
            observed_at=utc_now(),
            liquidity=float(liquidity or 0.0),
        )


class TinymanSource(DexSource):
    """Tinyman AMM: price derived from pool reserves (asset_2 per asset_1)."""

    name = "tinyman"

    def _fetch(self, pairs: List[str], deadline: float) -> Dict[str, PriceRecord]:
        result: Dict[str, PriceRecord] = {}
        for i, pair in enumerate(pairs):
            if i:
                time.sleep(HTTP["rate_limit_delay"])
            asset_a, asset_b = split_pair(pair)
            data = self._get("/pools", deadline, params={
                "asset_1": get_asset_id(asset_a),
                "asset_2": get_asset_id(asset_b),
            })
            pools = _as_list(data)
            if not pools:
                continue
            pool = pools[0]
            reserve_a = float(pool["asset_1_reserves"])
            reserve_b = float(pool["asset_2_reserves"])
            if reserve_a <= 0 or reserve_b <= 0:
                continue
            price = reserve_b / reserve_a
            result[pair] = self._record(
                pair,
                price,
                volume=pool.get("volume_24h", reserve_a + reserve_b),
                liquidity=reserve_a * price + reserve_b,
            )
        return result


class _SymbolListSource(DexSource):
    """Sources that return every pair in one call, keyed by a ``symbol`` field."""

    path = ""

    def _fetch(self, pairs: List[str], deadline: float) -> Dict[str, PriceRecord]:
        rows = _as_list(self._get(self.path, deadline))
        wanted = set(pairs)
        result: Dict[str, PriceRecord] = {}
        for row in rows:
            sym = str(row.get("symbol", "")).upper()
            if sym in wanted:
                result[sym] = self._record(
                    sym,
                    row["price"],
                    volume=row.get("volume_24h", 0.0),
                    liquidity=row.get("liquidity", 0.0),
                )
        return result


class PactSource(_SymbolListSource):
    name = "pact"
    path = "/pairs"


class DefilySource(_SymbolListSource):
    name = "defily"
    path = "/pools"


class AlgoFiSource(DexSource):
    """AlgoFi lending markets: oracle price of the pair's base asset."""

    name = "algofi"

    def _fetch(self, pairs: List[str], deadline: float) -> Dict[str, PriceRecord]:
        markets = _as_list(self._get("/markets", deadline))
        by_symbol: Dict[str, Dict[str, Any]] = {}
        for market in markets:
            if "underlying_asset" in market:
                by_symbol[get_asset_symbol(market["underlying_asset"])] = market

        result: Dict[str, PriceRecord] = {}
        for pair in pairs:
            base, _ = split_pair(pair)
            market = by_symbol.get(base)
            if market is None:
                continue
            price = float(market["underlying_price"])
            result[pair] = self._record(
                pair,
                price,
                volume=market.get("underlying_supplied", 0.0),
                liquidity=float(market.get("underlying_borrowed", 0.0)) * price,
            )
        return result


class VestigeSource(DexSource):
    """Vestige aggregator: one price call per base asset."""

    name = "vestige"

    def _fetch(self, pairs: List[str], deadline: float) -> Dict[str, PriceRecord]:
        result: Dict[str, PriceRecord] = {}
        for i, pair in enumerate(pairs):
            if i:
                time.sleep(HTTP["rate_limit_delay"])
            base, _ = split_pair(pair)
            data = self._get(f"/{get_asset_id(base)}/price", deadline)
            if "price" not in data:
                continue
            result[pair] = self._record(
                pair,
                data["price"],
                volume=data.get("volume_24h", 0.0),
                liquidity=data.get("liquidity", 0.0),
            )
        return result


SOURCE_CLASSES: Dict[str, type] = {
    cls.name: cls
    for cls in (TinymanSource, PactSource, AlgoFiSource, VestigeSource, DefilySource)
}


def build_sources(names: Optional[Iterable[str]] = None, timeout: Optional[float] = None) -> List[DexSource]:
    """Instantiate adapters by name (default: all known DEXes)."""
    names = list(names) if names is not None else list(SOURCE_CLASSES)
    sources: List[DexSource] = []
    for name in names:
        cls = SOURCE_CLASSES.get(name)
        if cls is None:
            raise ValueError(f"Unknown price source: {name!r}")
        sources.append(cls(timeout=timeout))
    return sources


# ---------------------------------------------------------------------------
# POOL SOURCES (yield farming)
# ---------------------------------------------------------------------------


def estimate_pool_risk(tvl: float) -> float:
    """Thin pools are riskier: 0.1 at >= $2M TVL, rising linearly to 0.8 at $0."""
    depth = min(max(tvl, 0.0) / 2_000_000.0, 1.0)
    return round(0.1 + 0.7 * (1.0 - depth), 4)


def _pool(protocol: str, pool_id: Any, asset_a: Any, asset_b: Any,
          apy: Any, tvl: Any, volume: Any, risk: Any = None) -> PoolInfo:
    tvl = float(tvl or 0.0)
    return PoolInfo(
        pool_id=f"{protocol}_{pool_id}",
        protocol=protocol,
        asset_a=str(asset_a).upper(),
        asset_b=str(asset_b).upper(),
        apy=float(apy or 0.0),
        tvl=tvl,
        volume_24h=float(volume or 0.0),
        risk_score=float(risk) if risk is not None else estimate_pool_risk(tvl),
    )


def _parse_tinyman_pools(data: Any) -> List[PoolInfo]:
    pools = []
    for row in _as_list(data):
        pools.append(_pool(
            "tinyman",
            row["address"],
            row["asset_1"]["unit_name"],
            row["asset_2"]["unit_name"],
            float(row.get("annual_percentage_yield") or 0.0) * 100,
            row.get("liquidity_in_usd"),
            row.get("last_day_volume_in_usd"),
        ))
    return pools


def _parse_pact_pools(data: Any) -> List[PoolInfo]:
    pools = []
    for row in _as_list(data):
        pools.append(_pool(
            "pact",
            row["id"],
            row["primary_asset"]["unit_name"],
            row["secondary_asset"]["unit_name"],
            float(row.get("apr_7d") or 0.0) * 100,
            row.get("tvl_usd"),
            row.get("volume_24h"),
        ))
    return pools


def _generic_pool_parser(protocol: str) -> Callable[[Any], List[PoolInfo]]:
    def parse(data: Any) -> List[PoolInfo]:
        return [
            _pool(protocol, row["id"], row["asset_a"], row["asset_b"],
                  row["apy"], row.get("tvl"), row.get("volume_24h"), row.get("risk_score"))
            for row in _as_list(data)
        ]
    return parse


POOL_PARSERS: Dict[str, Callable[[Any], List[PoolInfo]]] = {
    "tinyman": _parse_tinyman_pools,
    "pact": _parse_pact_pools,
    "algofi": _generic_pool_parser("algofi"),
    "folks": _generic_pool_parser("folks"),
}


def fetch_pools(protocol: str, timeout: Optional[float] = None) -> List[PoolInfo]:
    """
    Fetch liquidity pools for a protocol.

    Raises SourceUnavailable on any failure or when the protocol returns no pools.
    """
    protocol = protocol.lower()
    parser = POOL_PARSERS.get(protocol)
    if parser is None or protocol not in POOL_API:
        raise SourceUnavailable(protocol, "no pool API configured")

    data, latency = _get(protocol, POOL_API[protocol], timeout=timeout)
    logger.debug("%s pools fetched in %.0fms", protocol, latency)
    try:
        pools = parser(data)
    except _PARSE_ERRORS as exc:
        raise SourceUnavailable(protocol, f"unexpected pool response: {exc!r}") from exc
    if not pools:
        raise SourceUnavailable(protocol, "no pools returned")
    return pools
