"""
Tests for YieldResolver

Covers fetch failure handling, strategy matching, TVL/dilution filters,
deterministic tie-breaking and the fallback reason codes.
"""

from unittest.mock import MagicMock

import pytest
import requests

from yieldkeeper.allocation.models import FallbackReason, YieldCandidate
from yieldkeeper.allocation.yield_resolver import YieldResolver, dilution, effective_apy, rank_key

MINT = "usdc-mint"
DECIMALS = 6
PRICE_URL = "https://price.test/v2"


def market(market_id, provider, apy, tvl, vault_address=None, mint=MINT):
    record = {
        'id': market_id,
        'provider': {'id': provider, 'name': provider.title()},
        'token': {'address': mint},
        'depositApy': apy,
        'totalDepositUsd': tvl,
    }
    if vault_address:
        record['additionalData'] = {'vaultAddress': vault_address}
    return record


def make_session(payload=None, error=None, status_error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.json.return_value = payload
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    session.get.return_value = response
    return session


def routed_session(markets, price=None, price_error=None):
    """Session answering the markets URL and the price URL separately"""
    def get(url, **kwargs):
        if url == PRICE_URL:
            if price_error is not None:
                raise price_error
            response = MagicMock()
            response.json.return_value = {'data': {MINT: {'id': MINT, 'price': price}}}
            return response
        response = MagicMock()
        response.json.return_value = {'markets': markets}
        return response

    session = MagicMock()
    session.get.side_effect = get
    return session


@pytest.fixture
def make_resolver(registry):
    def _create(session, min_tvl_usd=0.0, max_dilution=0.005, price_url=None, asset_price_usd=1.0):
        return YieldResolver(
            registry=registry,
            api_url="https://yield.test/markets",
            asset_mint=MINT,
            timeout_seconds=3.0,
            min_tvl_usd=min_tvl_usd,
            max_dilution=max_dilution,
            asset_decimals=DECIMALS,
            asset_price_usd=asset_price_usd,
            price_url=price_url,
            session=session,
        )
    return _create


def usd(amount):
    """USD amount -> native units"""
    return int(amount * 10 ** DECIMALS)


class TestDilution:
    """Test dilution math"""

    def test_effective_apy_halves_when_doubling_tvl(self):
        candidate = YieldCandidate('m', 'p', 'P', MINT, 0.10, 1_000_000)

        assert effective_apy(candidate, 1_000_000) == pytest.approx(0.05)
        assert dilution(candidate, 1_000_000) == pytest.approx(0.05)

    def test_zero_deposit_has_no_dilution(self):
        candidate = YieldCandidate('m', 'p', 'P', MINT, 0.10, 1_000_000)

        assert dilution(candidate, 0) == 0

    def test_empty_market(self):
        candidate = YieldCandidate('m', 'p', 'P', MINT, 0.10, 0)

        assert effective_apy(candidate, 0) == 0.10


class TestFetch:
    """Test market fetching"""

    def test_uses_timeout(self, make_resolver):
        session = make_session({'markets': []})
        make_resolver(session).resolve_winner(usd(100))

        session.get.assert_called_once_with("https://yield.test/markets", timeout=3.0)

    def test_accepts_bare_list(self, make_resolver):
        session = make_session([market('1', 'jupiter', 0.05, 1e9)])
        result = make_resolver(session).resolve_winner(usd(100))

        assert result.winner_id == 'b'

    def test_other_assets_are_ignored(self, make_resolver):
        session = make_session({'markets': [market('1', 'jupiter', 0.05, 1e9, mint='sol-mint')]})
        result = make_resolver(session).resolve_winner(usd(100))

        assert result.winner_id is None
        assert result.reason == FallbackReason.NO_MATCH

    @pytest.mark.parametrize("error", [
        requests.Timeout("read timed out"),
        requests.ConnectionError("connection refused"),
    ])
    def test_transport_failure_is_api_fail(self, make_resolver, error, metrics_sink):
        result = make_resolver(make_session(error=error)).resolve_winner(usd(100))

        assert result.winner_id is None
        assert result.reason == FallbackReason.API_FAIL
        assert ('rebalance_fallback_total', 'inc', 1, {'reason': 'api_fail'}) in metrics_sink.events
        assert ('yield_api_calls_total', 'inc', 1, {'status': 'error'}) in metrics_sink.events

    def test_http_error_is_api_fail(self, make_resolver):
        session = make_session({}, status_error=requests.HTTPError("502 Bad Gateway"))
        result = make_resolver(session).resolve_winner(usd(100))

        assert result.reason == FallbackReason.API_FAIL

    def test_garbage_payload_is_api_fail(self, make_resolver):
        session = make_session({'markets': [{'id': 'x'}]})
        result = make_resolver(session).resolve_winner(usd(100))

        assert result.reason == FallbackReason.API_FAIL


class TestMatching:
    """Test candidate -> strategy matching"""

    def test_vault_address_hint(self, make_resolver):
        resolver = make_resolver(make_session())
        candidates = [YieldCandidate('1', 'kamino', 'Kamino', MINT, 0.05, 1e9, vault_address='a-address')]

        matched = resolver.match(candidates)

        assert [c.matched_strategy_id for c in matched] == ['a']

    def test_unknown_vault_address_dropped(self, make_resolver):
        resolver = make_resolver(make_session())
        candidates = [YieldCandidate('1', 'kamino', 'Kamino', MINT, 0.05, 1e9, vault_address='elsewhere')]

        assert resolver.match(candidates) == []

    def test_provider_matching(self, make_resolver):
        resolver = make_resolver(make_session())
        candidates = [
            YieldCandidate('1', 'jupiter', 'Jupiter', MINT, 0.05, 1e9),
            YieldCandidate('2', 'drift', 'Drift', MINT, 0.05, 1e9),
            YieldCandidate('3', 'marginfi', 'Marginfi', MINT, 0.05, 1e9),
        ]

        matched = resolver.match(candidates)

        assert [c.matched_strategy_id for c in matched] == ['b', 'c']


class TestResolveWinner:
    """Test the full pipeline"""

    def test_empty_candidate_list_is_no_match(self, make_resolver):
        result = make_resolver(make_session({'markets': []})).resolve_winner(usd(100))

        assert result.winner_id is None
        assert result.reason == FallbackReason.NO_MATCH

    def test_all_below_tvl_floor_is_all_filtered(self, make_resolver, metrics_sink):
        session = make_session({'markets': [market('1', 'jupiter', 0.05, 500), market('2', 'drift', 0.06, 900)]})
        result = make_resolver(session, min_tvl_usd=1000).resolve_winner(usd(1))

        assert result.winner_id is None
        assert result.reason == FallbackReason.ALL_FILTERED
        assert ('rebalance_fallback_total', 'inc', 1, {'reason': 'all_filtered'}) in metrics_sink.events

    def test_dilution_filter(self, make_resolver):
        """$1M into a $1M market halves the APY: filtered; the deep market wins"""
        session = make_session({'markets': [
            market('shallow', 'jupiter', 0.20, 1_000_000),
            market('deep', 'drift', 0.05, 1_000_000_000),
        ]})
        result = make_resolver(session).resolve_winner(usd(1_000_000))

        assert result.winner_id == 'c'
        assert result.candidate.market_id == 'deep'

    def test_highest_apy_wins(self, make_resolver, metrics_sink):
        session = make_session({'markets': [
            market('1', 'jupiter', 0.04, 1e9),
            market('2', 'drift', 0.07, 1e9),
            market('3', 'kamino', 0.05, 1e9, vault_address='a-address'),
        ]})
        result = make_resolver(session).resolve_winner(usd(1000))

        assert result.winner_id == 'c'
        assert ('yield_winner_apy', 'set', 0.07, {}) in metrics_sink.events

    def test_apy_tie_breaks_on_tvl(self, make_resolver):
        session = make_session({'markets': [
            market('1', 'jupiter', 0.05, 5e8),
            market('2', 'drift', 0.05, 9e8),
        ]})

        assert make_resolver(session).resolve_winner(usd(10)).winner_id == 'c'

    def test_full_tie_breaks_on_strategy_id(self, make_resolver):
        session = make_session({'markets': [
            market('2', 'drift', 0.05, 9e8),
            market('1', 'jupiter', 0.05, 9e8),
        ]})

        assert make_resolver(session).resolve_winner(usd(10)).winner_id == 'b'

    def test_rank_key_order(self):
        a = YieldCandidate('1', 'p', 'P', MINT, 0.05, 10, matched_strategy_id='x')
        b = YieldCandidate('2', 'p', 'P', MINT, 0.06, 1, matched_strategy_id='y')

        assert sorted([a, b], key=rank_key)[0] is b


class TestAssetPrice:
    """Our deposit is valued at the live asset price when one is available"""

    # $1M market at 10%: 1000 tokens at $1 barely dilutes it, at $100 they cost ~0.9%
    MARKETS = [market('1', 'jupiter', 0.10, 1_000_000)]

    def test_live_price_drives_dilution(self, make_resolver):
        session = routed_session(self.MARKETS, price="100.0")
        result = make_resolver(session, price_url=PRICE_URL).resolve_winner(usd(1000))

        assert result.winner_id is None
        assert result.reason == FallbackReason.ALL_FILTERED
        session.get.assert_any_call(PRICE_URL, params={'ids': MINT}, timeout=3.0)

    def test_price_failure_uses_configured_price(self, make_resolver):
        session = routed_session(self.MARKETS, price_error=requests.Timeout("read timed out"))
        result = make_resolver(session, price_url=PRICE_URL).resolve_winner(usd(1000))

        assert result.winner_id == 'b'

    def test_without_price_url_only_markets_are_fetched(self, make_resolver):
        session = routed_session(self.MARKETS, price="100.0")
        resolver = make_resolver(session, asset_price_usd=100.0)

        assert resolver.resolve_winner(usd(1000)).reason == FallbackReason.ALL_FILTERED
        session.get.assert_called_once_with("https://yield.test/markets", timeout=3.0)

    @pytest.mark.parametrize("price", [None, "0", "not-a-number"])
    def test_unusable_price_falls_back(self, make_resolver, price):
        resolver = make_resolver(routed_session([], price=price), price_url=PRICE_URL, asset_price_usd=2.5)

        assert resolver.fetch_asset_price() == 2.5

    def test_fetched_price_returned(self, make_resolver):
        resolver = make_resolver(routed_session([], price="1.0003"), price_url=PRICE_URL)

        assert resolver.fetch_asset_price() == pytest.approx(1.0003)
