"""
Yield Resolver

Fetches external yield markets, matches them to registered strategies,
filters by TVL floor and dilution ceiling and picks a single winner.

Pipeline:
    fetch (timeout) -> match -> price -> TVL filter -> dilution filter -> select

Never raises: every failure is reported as a fallback reason
(no_match, all_filtered, api_fail) and counted.
"""

import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import requests

from yieldkeeper.allocation.models import FallbackReason, YieldCandidate
from yieldkeeper.exceptions import YieldApiError
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.registry import StrategyKind, StrategyRegistry
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WinnerResult:
    """Outcome of resolve_winner: a winner id, or None with a reason"""
    winner_id: Optional[str]
    reason: Optional[FallbackReason] = None
    candidate: Optional[YieldCandidate] = None

    @property
    def has_winner(self) -> bool:
        return self.winner_id is not None


def effective_apy(candidate: YieldCandidate, our_deposit_usd: float) -> float:
    """APY after adding our own deposit to the market's TVL"""
    tvl = candidate.total_deposit_usd
    if tvl + our_deposit_usd <= 0:
        return candidate.deposit_apy
    return candidate.deposit_apy * tvl / (tvl + our_deposit_usd)


def dilution(candidate: YieldCandidate, our_deposit_usd: float) -> float:
    """Drop in APY caused by our deposit: apy - apy*tvl/(tvl+ours)"""
    return candidate.deposit_apy - effective_apy(candidate, our_deposit_usd)


def rank_key(candidate: YieldCandidate):
    """Highest APY, then highest TVL, then lexicographic strategy id"""
    return (-candidate.deposit_apy, -candidate.total_deposit_usd, candidate.matched_strategy_id or "")


class YieldResolver:
    """
    Resolves the yield winner for one cycle.

    Args:
        registry: Strategy registry used for matching
        api_url: Yield markets endpoint
        asset_mint: Only markets for this token are considered
        timeout_seconds: HTTP timeout (timeout => api_fail)
        min_tvl_usd: Candidates below this TVL are dropped
        max_dilution: Candidates whose dilution exceeds this are dropped
        asset_decimals: Native precision of the asset
        asset_price_usd: Fallback USD price used to value our deposit
        price_url: Optional token price endpoint, queried once per resolution
        session: Optional requests session (tests inject a mock)
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        api_url: str,
        asset_mint: str,
        timeout_seconds: float = 10.0,
        min_tvl_usd: float = 0.0,
        max_dilution: float = 0.005,
        asset_decimals: int = 6,
        asset_price_usd: float = 1.0,
        price_url: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.registry = registry
        self.api_url = api_url
        self.asset_mint = asset_mint
        self.timeout_seconds = timeout_seconds
        self.min_tvl_usd = min_tvl_usd
        self.max_dilution = max_dilution
        self.asset_decimals = asset_decimals
        self.asset_price_usd = asset_price_usd
        self.price_url = price_url
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, registry: StrategyRegistry, settings) -> "YieldResolver":
        return cls(
            registry=registry,
            api_url=settings.yield_api.url,
            asset_mint=settings.vault.asset_mint,
            timeout_seconds=settings.yield_api.timeout_seconds,
            min_tvl_usd=settings.yield_api.min_tvl_usd,
            max_dilution=settings.yield_api.max_dilution,
            asset_decimals=settings.vault.asset_decimals,
            asset_price_usd=settings.vault.asset_price_usd,
            price_url=settings.yield_api.price_url,
        )

    # =========================================================================
    # FETCH
    # =========================================================================

    def fetch_markets(self) -> List[YieldCandidate]:
        """
        Fetch markets for the configured asset.

        Raises:
            YieldApiError: Timeout, transport failure, non-2xx or bad payload
        """
        start = time.monotonic()
        try:
            response = self.session.get(self.api_url, timeout=self.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
            markets = payload['markets'] if isinstance(payload, dict) else payload
            candidates = [self._parse_market(m) for m in markets]
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            metrics.inc('yield_api_calls_total', {'status': 'error'})
            raise YieldApiError(f"Yield API request failed: {e}") from e
        finally:
            metrics.observe('yield_api_duration_seconds', time.monotonic() - start)

        metrics.inc('yield_api_calls_total', {'status': 'success'})

        for_asset = [c for c in candidates if c.token_address == self.asset_mint]
        logger.debug(f"Fetched yield markets: total={len(candidates)}, for_asset={len(for_asset)}")
        return for_asset

    def fetch_asset_price(self) -> float:
        """
        USD price of the vault asset.

        Falls back to the configured asset_price_usd when no price endpoint
        is set or the lookup fails.
        """
        if not self.price_url:
            return self.asset_price_usd

        try:
            response = self.session.get(self.price_url, params={'ids': self.asset_mint}, timeout=self.timeout_seconds)
            response.raise_for_status()
            price = float(response.json()['data'][self.asset_mint]['price'])
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Asset price lookup failed, using configured price {self.asset_price_usd}: {e}")
            return self.asset_price_usd

        if price <= 0:
            logger.warning(f"Asset price lookup returned {price}, using configured price {self.asset_price_usd}")
            return self.asset_price_usd

        logger.debug(f"Asset price: {price}")
        return price

    @staticmethod
    def _parse_market(market: Dict[str, Any]) -> YieldCandidate:
        provider = market.get('provider') or {}
        token = market.get('token') or {}
        additional = market.get('additionalData') or {}
        return YieldCandidate(
            market_id=str(market['id']),
            provider_id=str(provider.get('id', '')),
            provider_name=str(provider.get('name', provider.get('id', ''))),
            token_address=str(token.get('address', '')),
            deposit_apy=float(market['depositApy']),
            total_deposit_usd=float(market['totalDepositUsd']),
            vault_address=additional.get('vaultAddress'),
        )

    # =========================================================================
    # MATCH / FILTER / SELECT
    # =========================================================================

    def match(self, candidates: List[YieldCandidate]) -> List[YieldCandidate]:
        """
        Attach a registered strategy to each candidate; drop the unmatched.

        Rules:
        - vault_address hint matches a kamino_vault strategy with that address
        - provider 'jupiter' matches the jupiter_lend strategy
        - provider 'drift' matches the drift_earn strategy
        """
        provider_kinds = {
            'jupiter': StrategyKind.JUPITER_LEND,
            'drift': StrategyKind.DRIFT_EARN,
        }

        matched: List[YieldCandidate] = []
        for candidate in candidates:
            strategy_id = None

            if candidate.vault_address:
                for strategy in self.registry.of_kind(StrategyKind.KAMINO_VAULT):
                    if strategy.address == candidate.vault_address:
                        strategy_id = strategy.id
                        break

            if strategy_id is None and candidate.provider_id in provider_kinds:
                same_kind = self.registry.of_kind(provider_kinds[candidate.provider_id])
                if same_kind:
                    strategy_id = same_kind[0].id

            if strategy_id is not None:
                matched.append(replace(candidate, matched_strategy_id=strategy_id))

        return matched

    def filter_by_tvl(self, candidates: List[YieldCandidate]) -> List[YieldCandidate]:
        return [c for c in candidates if c.total_deposit_usd >= self.min_tvl_usd]

    def filter_by_dilution(self, candidates: List[YieldCandidate], our_deposit_usd: float) -> List[YieldCandidate]:
        return [c for c in candidates if dilution(c, our_deposit_usd) <= self.max_dilution]

    def select(self, candidates: List[YieldCandidate], our_deposit_usd: float) -> Optional[YieldCandidate]:
        """Apply both filters and return the best candidate (or None)"""
        tvl_filtered = self.filter_by_tvl(candidates)
        logger.debug(f"TVL filter applied: before={len(candidates)}, after={len(tvl_filtered)}")

        dilution_filtered = self.filter_by_dilution(tvl_filtered, our_deposit_usd)
        logger.debug(f"Dilution filter applied: before={len(tvl_filtered)}, after={len(dilution_filtered)}")

        if not dilution_filtered:
            return None
        return sorted(dilution_filtered, key=rank_key)[0]

    def to_usd(self, total_value: int, price: Optional[float] = None) -> float:
        if price is None:
            price = self.asset_price_usd
        return total_value / (10 ** self.asset_decimals) * price

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def resolve_winner(self, total_value: int) -> WinnerResult:
        """
        Pick the yield winner for a pool holding `total_value` native units.

        Returns:
            WinnerResult with winner_id, or winner_id=None plus reason
        """
        try:
            markets = self.fetch_markets()
        except YieldApiError as e:
            logger.error(f"Yield API failed, falling back to equal-weight: {e}")
            return self._fallback(FallbackReason.API_FAIL)

        return self.resolve_from_candidates(markets, total_value)

    def resolve_from_candidates(self, markets: List[YieldCandidate], total_value: int) -> WinnerResult:
        """Resolution for already fetched markets (matching onwards)"""
        matched = self.match(markets)
        logger.info(f"Yield market matching complete: fetched={len(markets)}, matched={len(matched)}")

        if not matched:
            logger.warning("No yield markets matched any registered strategy, falling back to equal-weight")
            return self._fallback(FallbackReason.NO_MATCH)

        our_deposit_usd = self.to_usd(total_value, self.fetch_asset_price())
        winner = self.select(matched, our_deposit_usd)

        if winner is None:
            logger.warning("All candidates filtered out by TVL/dilution, falling back to equal-weight")
            return self._fallback(FallbackReason.ALL_FILTERED)

        metrics.set('yield_winner_apy', winner.deposit_apy)
        metrics.set('yield_winner_tvl', winner.total_deposit_usd)
        metrics.set('yield_winner_info', 1, {
            'strategy_id': winner.matched_strategy_id,
            'provider': winner.provider_name,
        })

        logger.info(
            f"Yield winner selected - allocating 100%: {winner.matched_strategy_id} "
            f"apy={winner.deposit_apy * 100:.2f}% tvl=${winner.total_deposit_usd:,.0f} "
            f"our_deposit=${our_deposit_usd:,.0f} provider={winner.provider_name}"
        )
        return WinnerResult(winner_id=winner.matched_strategy_id, candidate=winner)

    @staticmethod
    def _fallback(reason: FallbackReason) -> WinnerResult:
        metrics.inc('rebalance_fallback_total', {'reason': reason.value})
        return WinnerResult(winner_id=None, reason=reason)
