"""Tests for payload decoding, retrieval (retry, circuit breaker, fallback) and live polling."""
import sys
import os
import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import patch, AsyncMock, MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import (
    Player,
    Position,
    LiveStat,
    Fixture,
    Squad,
    StatSnapshot,
    DataCache,
    PollingConfig,
    PollStatus,
    LivePollState,
    LivePoller,
    retry_delay,
    start_poll,
    poll_succeeded,
    poll_failed,
    build_stat_snapshot,
    get_current_gameweek,
    fetch_with_retry,
    fetch_fpl_data,
    fetch_manager_picks,
    fetch_picks_with_fallback,
    load_stat_snapshot,
    reset_circuit_breaker,
    parse_retry_after,
)

import httpx
import pytest
from fastapi import HTTPException


URL = "https://fantasy.premierleague.com/api/test/"


def _response(status, json=None, headers=None):
    return httpx.Response(status, json=json, headers=headers, request=httpx.Request("GET", URL))


def _fake_client(*responses):
    client = MagicMock()
    client.get = AsyncMock(side_effect=list(responses))
    return client


@pytest.fixture(autouse=True)
def _reset_breaker():
    reset_circuit_breaker()
    yield
    reset_circuit_breaker()


# =============================================================================
# Decoding
# =============================================================================

class TestDecoding:
    def test_live_stat_from_api(self, make_live_element):
        element = make_live_element(
            player_id=7, fixture=42, minutes=70, goals_scored=1, bps=0,
            explain_stats=[{"identifier": "penalties_scored", "points": 5, "value": 1}],
        )
        stats = LiveStat.from_api(element)
        assert stats.player_id == 7
        assert stats.minutes == 70
        assert stats.penalty_goals == 1
        assert stats.played_in(42)
        assert not stats.played_in(43)

    def test_missing_save_breakdown_is_none(self, make_live_element):
        stats = LiveStat.from_api(make_live_element(saves=4))
        assert stats.saves == 4
        assert stats.saves_inside_box is None
        assert not stats.has_save_breakdown

    def test_save_breakdown_present(self, make_live_element):
        stats = LiveStat.from_api(make_live_element(saves=4, saves_inside_box=3, saves_outside_box=1))
        assert stats.has_save_breakdown
        assert (stats.saves_inside_box, stats.saves_outside_box) == (3, 1)

    def test_null_stats_default_to_zero(self):
        stats = LiveStat.from_api({"id": 3, "stats": {"minutes": None}, "explain": None})
        assert stats.minutes == 0
        assert stats.explain == ()

    def test_player_from_api(self):
        player = Player.from_api({"id": 5, "web_name": "Saka", "element_type": 3, "team": 1})
        assert player.position == Position.MID
        assert player.team == 1

    def test_unknown_element_type(self):
        assert Player.from_api({"id": 5, "element_type": 9}).position == Position.UNKNOWN

    def test_fixture_from_api(self):
        fixture = Fixture.from_api({
            "id": 1, "event": 30, "team_h": 1, "team_a": 2,
            "team_h_score": None, "team_a_score": None, "started": False, "finished": False,
        })
        assert fixture.gameweek == 30
        assert fixture.team_h_score is None
        assert not fixture.is_live

    def test_squad_from_api_sorted_with_cost(self):
        payload = {
            "active_chip": "bboost",
            "entry_history": {"event_transfers_cost": 8},
            "picks": [
                {"element": 2, "position": 12, "multiplier": 0},
                {"element": 1, "position": 1, "multiplier": 1, "is_vice_captain": True},
            ],
        }
        squad = Squad.from_api(payload)
        assert [p.slot for p in squad.picks] == [1, 12]
        assert squad.picks[0].is_vice_captain
        assert not squad.picks[1].is_starter
        assert squad.active_chip == "bboost"
        assert squad.transfer_cost == 8

    def test_snapshot_lookup_fallbacks(self):
        snapshot = StatSnapshot(gameweek=1)
        assert snapshot.player(99).web_name == "Player 99"
        assert snapshot.live_stat(99).minutes == 0


class TestBuildStatSnapshot:
    def test_filters_fixtures_to_gameweek(self, make_live_element):
        bootstrap = {"elements": [{"id": 1, "web_name": "A", "element_type": 4, "team": 1}]}
        live = {"elements": [make_live_element(player_id=1)]}
        fixtures = [
            {"id": 1, "event": 30, "team_h": 1, "team_a": 2, "started": True},
            {"id": 2, "event": 31, "team_h": 3, "team_a": 4},
        ]
        snapshot = build_stat_snapshot(30, bootstrap, live, fixtures, season="2025")
        assert [f.id for f in snapshot.fixtures] == [1]
        assert snapshot.players[1].position == Position.FWD
        assert snapshot.live[1].minutes == 90
        assert snapshot.squad is None
        assert snapshot.season == "2025"
        assert snapshot.has_live_fixtures

    def test_with_picks(self):
        picks = {"picks": [{"element": 1, "position": 1, "multiplier": 1}]}
        snapshot = build_stat_snapshot(30, {}, {}, [], picks)
        assert len(snapshot.squad.picks) == 1

    def test_current_gameweek(self):
        assert get_current_gameweek([{"id": 1}, {"id": 2, "is_current": True}]) == 2
        assert get_current_gameweek([{"id": 1}, {"id": 2, "is_next": True}]) == 2
        assert get_current_gameweek([]) == 1


# =============================================================================
# Cache
# =============================================================================

class TestDataCache:
    def test_live_roundtrip(self):
        c = DataCache()
        assert c.get_live(30) is None
        c.set_live(30, {"elements": []})
        assert c.get_live(30) == {"elements": []}

    def test_live_expires(self):
        c = DataCache()
        c.live_data[30] = ({"elements": []}, datetime.now() - timedelta(seconds=c.live_cache_duration + 1))
        assert c.get_live(30) is None

    def test_clear_live(self):
        c = DataCache()
        c.set_live(1, {})
        c.set_live(2, {})
        assert c.clear_live() == 2
        assert c.live_data == {}
        assert c.fixtures_is_stale()

    def test_new_cache_is_stale(self):
        c = DataCache()
        assert c.is_stale()
        assert c.fixtures_is_stale()


# =============================================================================
# fetch_with_retry / circuit breaker
# =============================================================================

class TestFetchWithRetry:
    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_retries_server_error(self, mock_client, mock_sleep):
        mock_client.return_value = _fake_client(_response(503), _response(200, json={"ok": True}))
        response = asyncio.run(fetch_with_retry(URL))
        assert response.json() == {"ok": True}
        assert mock_sleep.await_count == 1

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_honours_retry_after(self, mock_client, mock_sleep):
        mock_client.return_value = _fake_client(
            _response(429, headers={"Retry-After": "2"}), _response(200, json={}))
        asyncio.run(fetch_with_retry(URL))
        mock_sleep.assert_awaited_once_with(2)

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_retry_after_http_date(self, mock_client, mock_sleep):
        mock_client.return_value = _fake_client(
            _response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            _response(200, json={"ok": True}))
        response = asyncio.run(fetch_with_retry(URL))
        assert response.json() == {"ok": True}
        # Date already passed: retry straight away
        mock_sleep.assert_awaited_once_with(0.0)

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_unparseable_retry_after_uses_backoff(self, mock_client, mock_sleep):
        mock_client.return_value = _fake_client(
            _response(429, headers={"Retry-After": "soon"}), _response(200, json={}))
        asyncio.run(fetch_with_retry(URL, base_delay=1.0))
        mock_sleep.assert_awaited_once_with(1.0)


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("5", 1.0) == 5.0

    def test_missing_header(self):
        assert parse_retry_after(None, 4.0) == 4.0

    def test_future_http_date(self):
        when = format_datetime(datetime.now(timezone.utc) + timedelta(seconds=60), usegmt=True)
        assert parse_retry_after(when, 1.0) == pytest.approx(60, abs=5)

    def test_garbage(self):
        assert parse_retry_after("Wed, 99 Foo", 3.0) == 3.0

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_client_error_not_retried(self, mock_client, mock_sleep):
        client = _fake_client(_response(404))
        mock_client.return_value = client
        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(fetch_with_retry(URL))
        assert client.get.await_count == 1
        mock_sleep.assert_not_awaited()

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    @patch("fpl_live.services.get_http_client", new_callable=AsyncMock)
    def test_circuit_opens_after_repeated_failures(self, mock_client, mock_sleep):
        from fpl_live.services import _circuit_breaker

        for _ in range(_circuit_breaker["threshold"]):
            mock_client.return_value = _fake_client(*[_response(503)] * 2)
            with pytest.raises(httpx.HTTPStatusError):
                asyncio.run(fetch_with_retry(URL, max_retries=2))

        assert _circuit_breaker["open_until"] is not None

        client = _fake_client(_response(200, json={}))
        mock_client.return_value = client
        with pytest.raises(HTTPException) as exc:
            asyncio.run(fetch_with_retry(URL))
        assert exc.value.status_code == 503
        client.get.assert_not_awaited()


# =============================================================================
# Fetchers
# =============================================================================

class TestFetchers:
    @patch("fpl_live.services.fetch_with_retry", new_callable=AsyncMock)
    def test_stale_bootstrap_served_on_failure(self, mock_fetch):
        stale = DataCache()
        stale.bootstrap_data = {"elements": [], "events": []}
        mock_fetch.side_effect = HTTPException(status_code=503, detail="down")
        with patch("fpl_live.services.cache", stale):
            assert asyncio.run(fetch_fpl_data()) == {"elements": [], "events": []}

    @patch("fpl_live.services.fetch_with_retry", new_callable=AsyncMock)
    def test_bootstrap_failure_without_cache(self, mock_fetch):
        mock_fetch.side_effect = HTTPException(status_code=503, detail="down")
        with patch("fpl_live.services.cache", DataCache()):
            with pytest.raises(HTTPException) as exc:
                asyncio.run(fetch_fpl_data())
        assert exc.value.status_code == 503

    @patch("fpl_live.services.fetch_with_retry", new_callable=AsyncMock)
    def test_missing_picks_is_none(self, mock_fetch):
        response = _response(404)
        mock_fetch.side_effect = httpx.HTTPStatusError("not found", request=response.request, response=response)
        assert asyncio.run(fetch_manager_picks(1, 30)) is None


class TestPicksFallback:
    @patch("fpl_live.services.fetch_manager_picks", new_callable=AsyncMock)
    def test_requested_gameweek_first(self, mock_picks):
        mock_picks.return_value = {"picks": [{"element": 1}]}
        gw, _ = asyncio.run(fetch_picks_with_fallback(1, 30))
        assert gw == 30
        assert mock_picks.await_count == 1

    @patch("fpl_live.services.fetch_manager_picks", new_callable=AsyncMock)
    def test_walks_back(self, mock_picks):
        mock_picks.side_effect = [None, {"picks": []}, {"picks": [{"element": 1}]}]
        gw, payload = asyncio.run(fetch_picks_with_fallback(1, 30))
        assert gw == 28
        assert [c.args for c in mock_picks.await_args_list] == [(1, 30), (1, 29), (1, 28)]

    @patch("fpl_live.services.fetch_manager_picks", new_callable=AsyncMock)
    def test_gives_up_after_configured_depth(self, mock_picks):
        mock_picks.return_value = None
        with pytest.raises(HTTPException) as exc:
            asyncio.run(fetch_picks_with_fallback(1, 30, fallback_gameweeks=1))
        assert exc.value.status_code == 404
        assert mock_picks.await_count == 2

    @patch("fpl_live.services.fetch_manager_picks", new_callable=AsyncMock)
    def test_never_before_gameweek_one(self, mock_picks):
        mock_picks.return_value = None
        with pytest.raises(HTTPException):
            asyncio.run(fetch_picks_with_fallback(1, 1))
        assert mock_picks.await_count == 1


class TestLoadStatSnapshot:
    @patch("fpl_live.services.fetch_picks_with_fallback", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_fixtures", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_live_gameweek", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_fpl_data", new_callable=AsyncMock)
    def test_current_gameweek_and_picks(self, mock_bootstrap, mock_live, mock_fixtures, mock_picks):
        mock_bootstrap.return_value = {"elements": [], "events": [{"id": 12, "is_current": True}]}
        mock_live.return_value = {"elements": []}
        mock_fixtures.return_value = [{"id": 1, "event": 12, "team_h": 1, "team_a": 2}]
        mock_picks.return_value = (12, {"picks": [{"element": 1, "position": 1}]})

        snapshot = asyncio.run(load_stat_snapshot(manager_id=5))

        assert snapshot.gameweek == 12
        mock_live.assert_awaited_once_with(12)
        mock_picks.assert_awaited_once_with(5, 12)
        assert snapshot.squad is not None

    @patch("fpl_live.services.fetch_picks_with_fallback", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_fixtures", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_live_gameweek", new_callable=AsyncMock)
    @patch("fpl_live.services.fetch_fpl_data", new_callable=AsyncMock)
    def test_no_manager_no_picks(self, mock_bootstrap, mock_live, mock_fixtures, mock_picks):
        mock_bootstrap.return_value = {"elements": []}
        mock_live.return_value = {"elements": []}
        mock_fixtures.return_value = []

        snapshot = asyncio.run(load_stat_snapshot(20))

        assert snapshot.gameweek == 20
        assert snapshot.squad is None
        mock_picks.assert_not_awaited()


# =============================================================================
# Polling state machine
# =============================================================================

LIVE = StatSnapshot(gameweek=1, fixtures=(Fixture(id=1, gameweek=1, team_h=1, team_a=2, started=True),))
DONE = StatSnapshot(gameweek=1, fixtures=(Fixture(id=1, gameweek=1, team_h=1, team_a=2, started=True, finished=True),))


class TestRetryDelay:
    def test_doubles_up_to_cap(self):
        assert [retry_delay(n) for n in range(6)] == [10, 20, 40, 80, 120, 120]

    def test_custom_config(self):
        config = PollingConfig(retry_base_delay=1, retry_max_delay=5)
        assert [retry_delay(n, config) for n in range(4)] == [1, 2, 4, 5]


class TestPollTransitions:
    def test_idle_to_fetching(self):
        assert start_poll(LivePollState()).status == PollStatus.FETCHING

    def test_failures_back_off(self):
        state = LivePollState()
        delays = []
        for _ in range(3):
            poll_failed(state, "boom")
            delays.append(state.next_delay)
        assert state.status == PollStatus.BACKOFF_WAIT
        assert state.retry_count == 3
        assert delays == [10, 20, 40]
        assert state.last_error == "boom"

    def test_success_resets(self):
        state = LivePollState(retry_count=4, last_error="boom")
        poll_succeeded(state, has_live_fixtures=True)
        assert state.status == PollStatus.SUCCESS
        assert state.retry_count == 0
        assert state.last_error is None
        assert state.next_delay == 90
        assert state.auto_refresh

    def test_success_with_nothing_live_stops_refresh(self):
        state = poll_succeeded(LivePollState(), has_live_fixtures=False)
        assert not state.auto_refresh


class TestLivePoller:
    def test_tick_success(self):
        seen = []

        async def scenario():
            async def fetch():
                return LIVE
            poller = LivePoller(fetch, seen.append)
            return await poller.tick()

        state = asyncio.run(scenario())
        assert state.status == PollStatus.SUCCESS
        assert state.auto_refresh
        assert seen == [LIVE]

    def test_tick_failure_then_recovery(self):
        results = [HTTPException(status_code=503, detail="down"), httpx.ConnectError("no route"), LIVE]

        async def scenario():
            async def fetch():
                item = results.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            poller = LivePoller(fetch, lambda s: None)
            states = []
            for _ in range(3):
                state = await poller.tick()
                states.append((state.status, state.retry_count, state.next_delay))
            return states

        assert asyncio.run(scenario()) == [
            (PollStatus.BACKOFF_WAIT, 1, 10),
            (PollStatus.BACKOFF_WAIT, 2, 20),
            (PollStatus.SUCCESS, 0, 90),
        ]

    def test_unexpected_error_still_backs_off(self):
        fetch = AsyncMock(side_effect=ValueError("invalid literal for int()"))

        async def scenario():
            poller = LivePoller(fetch, lambda s: None)
            return await poller.tick()

        state = asyncio.run(scenario())
        assert state.status == PollStatus.BACKOFF_WAIT
        assert state.retry_count == 1
        assert state.next_delay == 10
        assert "ValueError" in state.last_error

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    def test_run_survives_unexpected_error(self, mock_sleep):
        fetch = AsyncMock(side_effect=[RuntimeError("boom"), DONE])

        async def scenario():
            poller = LivePoller(fetch, lambda s: None)
            await poller.run(max_ticks=5)
            return poller.state

        state = asyncio.run(scenario())
        assert state.status == PollStatus.SUCCESS
        assert fetch.await_count == 2
        assert [c.args[0] for c in mock_sleep.await_args_list] == [10]

    def test_hidden_view_does_not_fetch(self):
        fetch = AsyncMock(return_value=LIVE)

        async def scenario():
            poller = LivePoller(fetch, lambda s: None)
            poller.visible = False
            return await poller.tick()

        state = asyncio.run(scenario())
        assert state.status == PollStatus.IDLE
        fetch.assert_not_awaited()

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    def test_run_stops_when_nothing_live(self, mock_sleep):
        fetch = AsyncMock(side_effect=[LIVE, DONE, LIVE])

        async def scenario():
            poller = LivePoller(fetch, lambda s: None)
            await poller.run(max_ticks=5)

        asyncio.run(scenario())
        assert fetch.await_count == 2
        assert [c.args[0] for c in mock_sleep.await_args_list] == [90]

    @patch("fpl_live.services.asyncio.sleep", new_callable=AsyncMock)
    def test_run_waits_backoff_delay(self, mock_sleep):
        fetch = AsyncMock(side_effect=HTTPException(status_code=503, detail="down"))

        async def scenario():
            poller = LivePoller(fetch, lambda s: None)
            await poller.run(max_ticks=3)

        asyncio.run(scenario())
        assert [c.args[0] for c in mock_sleep.await_args_list] == [10, 20, 40]
