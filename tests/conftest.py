"""Shared fixtures for FPL Live test suite."""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from fpl_live.models import Player, Position, LiveStat, FixtureExplain, Squad, SquadPick, StatSnapshot, Fixture


# Default 15: GKP, 4 DEF, 4 MID, 2 FWD starting; bench GKP, DEF, MID, FWD
DEFAULT_SLOT_POSITIONS = {
    1: 1, 2: 2, 3: 2, 4: 2, 5: 2, 6: 3, 7: 3, 8: 3, 9: 3, 10: 4, 11: 4,
    12: 1, 13: 2, 14: 3, 15: 4,
}


@pytest.fixture
def make_live_element():
    """Factory for /event/{gw}/live/ element dicts matching FPL API shape."""
    def _make(player_id=1, fixture=1, explain_stats=None, **stats):
        base = {
            "minutes": 90,
            "goals_scored": 0,
            "assists": 0,
            "clean_sheets": 0,
            "goals_conceded": 0,
            "own_goals": 0,
            "penalties_saved": 0,
            "penalties_missed": 0,
            "yellow_cards": 0,
            "red_cards": 0,
            "saves": 0,
            "bonus": 0,
            "bps": 0,
            "total_points": 2,
            "clearances_blocks_interceptions": 0,
            "recoveries": 0,
            "tackles": 0,
        }
        base.update(stats)
        return {
            "id": player_id,
            "stats": base,
            "explain": [{
                "fixture": fixture,
                "stats": explain_stats or [{"identifier": "minutes", "points": 2, "value": base["minutes"]}],
            }],
        }
    return _make


@pytest.fixture
def make_stat():
    """Factory for LiveStat with zeroed defaults."""
    def _make(player_id=1, fixture=None, **overrides):
        explain = (FixtureExplain(fixture=fixture),) if fixture is not None else ()
        overrides.setdefault("explain", explain)
        return LiveStat(player_id=player_id, **overrides)
    return _make


@pytest.fixture
def make_squad_snapshot():
    """
    Factory for a snapshot holding one 15-man squad.

    Player id = 100 + slot. `minutes` and `points` map slot -> value
    (unlisted slots play 90 minutes and score 2). `positions` overrides the
    element_type per slot. Captain is slot 10, vice slot 11 unless given.
    """
    def _make(minutes=None, points=None, positions=None, captain=10, vice=11,
              chip=None, transfer_cost=0, missing_players=()):
        minutes = minutes or {}
        points = points or {}
        slot_positions = dict(DEFAULT_SLOT_POSITIONS)
        slot_positions.update(positions or {})

        players = {}
        live = {}
        picks = []
        for slot in range(1, 16):
            pid = 100 + slot
            if slot not in missing_players:
                players[pid] = Player(
                    id=pid,
                    web_name=f"Slot{slot}",
                    position=Position.from_element_type(slot_positions[slot]),
                    team=1,
                )
            mins = minutes.get(slot, 90)
            live[pid] = LiveStat(
                player_id=pid,
                minutes=mins,
                total_points=points.get(slot, 2 if mins > 0 else 0),
            )
            if slot == captain:
                multiplier = 3 if chip == "3xc" else 2
            elif slot <= 11:
                multiplier = 1
            else:
                multiplier = 0
            picks.append(SquadPick(
                element=pid,
                slot=slot,
                multiplier=multiplier,
                is_captain=slot == captain,
                is_vice_captain=slot == vice,
            ))

        return StatSnapshot(
            gameweek=30,
            players=players,
            live=live,
            fixtures=(Fixture(id=1, gameweek=30, team_h=1, team_a=2, started=True),),
            squad=Squad(picks=tuple(picks), active_chip=chip, transfer_cost=transfer_cost),
        )
    return _make
