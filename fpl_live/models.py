from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple
from enum import Enum
from pydantic import BaseModel

from fpl_live.constants import PENALTY_GOAL_IDENTIFIER, FIRST_BENCH_SLOT


# ============ ENUMS ============

class Position(str, Enum):
    GKP = "GKP"
    DEF = "DEF"
    MID = "MID"
    FWD = "FWD"
    UNKNOWN = "UNK"

    @classmethod
    def from_element_type(cls, element_type: Optional[int]) -> "Position":
        return _ELEMENT_TYPE_TO_POSITION.get(element_type, cls.UNKNOWN)

    @property
    def element_type(self) -> int:
        """FPL element_type id, 0 for UNKNOWN."""
        return _POSITION_TO_ELEMENT_TYPE.get(self, 0)

    @property
    def is_outfield(self) -> bool:
        return self in (Position.DEF, Position.MID, Position.FWD)


_ELEMENT_TYPE_TO_POSITION = {1: Position.GKP, 2: Position.DEF, 3: Position.MID, 4: Position.FWD}
_POSITION_TO_ELEMENT_TYPE = {v: k for k, v in _ELEMENT_TYPE_TO_POSITION.items()}


def _int(data: Dict, key: str) -> int:
    return int(data.get(key, 0) or 0)


def _optional_int(data: Dict, key: str) -> Optional[int]:
    value = data.get(key)
    return None if value is None else int(value)


# =============================================================================
# STAT SNAPSHOT - immutable inputs, one per poll
# =============================================================================

@dataclass(frozen=True)
class Player:
    """Reference data for one player."""
    id: int
    web_name: str
    position: Position
    team: int = 0
    code: int = 0
    team_code: int = 0
    first_name: str = ""
    second_name: str = ""

    @classmethod
    def from_api(cls, element: Dict) -> "Player":
        return cls(
            id=element["id"],
            web_name=element.get("web_name", f"Player {element['id']}"),
            position=Position.from_element_type(element.get("element_type")),
            team=_int(element, "team"),
            code=_int(element, "code"),
            team_code=_int(element, "team_code"),
            first_name=element.get("first_name") or "",
            second_name=element.get("second_name") or "",
        )

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on any of the player's names."""
        query = query.lower()
        return any(query in name.lower() for name in (self.web_name, self.first_name, self.second_name))

    @classmethod
    def placeholder(cls, player_id: int) -> "Player":
        """Stand-in for a pick missing from reference data."""
        return cls(id=player_id, web_name=f"Player {player_id}", position=Position.UNKNOWN)


@dataclass(frozen=True)
class ExplainStat:
    identifier: str
    points: int
    value: int


@dataclass(frozen=True)
class FixtureExplain:
    """Per-fixture breakdown of how a player's points were awarded."""
    fixture: int
    stats: Tuple[ExplainStat, ...] = ()

    @classmethod
    def from_api(cls, entry: Dict) -> "FixtureExplain":
        return cls(
            fixture=entry["fixture"],
            stats=tuple(
                ExplainStat(
                    identifier=s.get("identifier", ""),
                    points=_int(s, "points"),
                    value=_int(s, "value"),
                )
                for s in entry.get("stats", [])
            ),
        )


@dataclass(frozen=True)
class LiveStat:
    """
    One player's live stats for a gameweek.

    bps/bonus stay 0 until the authority computes them. The inside/outside
    box save split is None when the feed does not provide it.
    """
    player_id: int
    minutes: int = 0
    goals_scored: int = 0
    assists: int = 0
    clean_sheets: int = 0
    goals_conceded: int = 0
    saves: int = 0
    saves_inside_box: Optional[int] = None
    saves_outside_box: Optional[int] = None
    tackles: int = 0
    clearances_blocks_interceptions: int = 0
    recoveries: int = 0
    goalline_clearances: int = 0
    penalties_saved: int = 0
    penalties_missed: int = 0
    yellow_cards: int = 0
    red_cards: int = 0
    own_goals: int = 0
    bonus: int = 0
    bps: int = 0
    total_points: int = 0
    explain: Tuple[FixtureExplain, ...] = ()

    @classmethod
    def from_api(cls, element: Dict) -> "LiveStat":
        """Parse one element of /event/{gw}/live/."""
        stats = element.get("stats", {}) or {}
        return cls(
            player_id=element["id"],
            minutes=_int(stats, "minutes"),
            goals_scored=_int(stats, "goals_scored"),
            assists=_int(stats, "assists"),
            clean_sheets=_int(stats, "clean_sheets"),
            goals_conceded=_int(stats, "goals_conceded"),
            saves=_int(stats, "saves"),
            saves_inside_box=_optional_int(stats, "saves_inside_box"),
            saves_outside_box=_optional_int(stats, "saves_outside_box"),
            tackles=_int(stats, "tackles"),
            clearances_blocks_interceptions=_int(stats, "clearances_blocks_interceptions"),
            recoveries=_int(stats, "recoveries"),
            goalline_clearances=_int(stats, "goalline_clearances"),
            penalties_saved=_int(stats, "penalties_saved"),
            penalties_missed=_int(stats, "penalties_missed"),
            yellow_cards=_int(stats, "yellow_cards"),
            red_cards=_int(stats, "red_cards"),
            own_goals=_int(stats, "own_goals"),
            bonus=_int(stats, "bonus"),
            bps=_int(stats, "bps"),
            total_points=_int(stats, "total_points"),
            explain=tuple(FixtureExplain.from_api(e) for e in element.get("explain", []) or []),
        )

    @property
    def penalty_goals(self) -> int:
        return sum(
            s.value
            for entry in self.explain
            for s in entry.stats
            if s.identifier == PENALTY_GOAL_IDENTIFIER
        )

    @property
    def has_save_breakdown(self) -> bool:
        return self.saves_inside_box is not None or self.saves_outside_box is not None

    def played_in(self, fixture_id: int) -> bool:
        return any(entry.fixture == fixture_id for entry in self.explain)


@dataclass(frozen=True)
class Fixture:
    id: int
    gameweek: Optional[int]
    team_h: int
    team_a: int
    team_h_score: Optional[int] = None
    team_a_score: Optional[int] = None
    started: bool = False
    finished: bool = False
    minutes: int = 0

    @classmethod
    def from_api(cls, fixture: Dict) -> "Fixture":
        return cls(
            id=fixture["id"],
            gameweek=fixture.get("event"),
            team_h=fixture["team_h"],
            team_a=fixture["team_a"],
            team_h_score=fixture.get("team_h_score"),
            team_a_score=fixture.get("team_a_score"),
            started=bool(fixture.get("started")),
            finished=bool(fixture.get("finished")),
            minutes=_int(fixture, "minutes"),
        )

    @property
    def is_live(self) -> bool:
        return self.started and not self.finished


@dataclass(frozen=True)
class SquadPick:
    element: int
    slot: int  # 1-11 starters, 12-15 bench in substitution order
    multiplier: int = 1
    is_captain: bool = False
    is_vice_captain: bool = False

    @classmethod
    def from_api(cls, pick: Dict) -> "SquadPick":
        return cls(
            element=pick["element"],
            slot=pick["position"],
            multiplier=_int(pick, "multiplier"),
            is_captain=bool(pick.get("is_captain")),
            is_vice_captain=bool(pick.get("is_vice_captain")),
        )

    @property
    def is_starter(self) -> bool:
        return self.slot < FIRST_BENCH_SLOT


@dataclass(frozen=True)
class Squad:
    """A manager's 15 picks for one gameweek."""
    picks: Tuple[SquadPick, ...]
    active_chip: Optional[str] = None
    transfer_cost: int = 0

    @classmethod
    def from_api(cls, payload: Dict) -> "Squad":
        """Parse /entry/{id}/event/{gw}/picks/."""
        entry_history = payload.get("entry_history", {}) or {}
        picks = sorted((SquadPick.from_api(p) for p in payload.get("picks", [])), key=lambda p: p.slot)
        return cls(
            picks=tuple(picks),
            active_chip=payload.get("active_chip"),
            transfer_cost=_int(entry_history, "event_transfers_cost"),
        )


@dataclass(frozen=True)
class StatSnapshot:
    """Everything the engine needs for one poll."""
    gameweek: int
    players: Dict[int, Player] = field(default_factory=dict)
    live: Dict[int, LiveStat] = field(default_factory=dict)
    fixtures: Tuple[Fixture, ...] = ()
    squad: Optional[Squad] = None
    season: Optional[str] = None

    def player(self, player_id: int) -> Player:
        return self.players.get(player_id) or Player.placeholder(player_id)

    def live_stat(self, player_id: int) -> LiveStat:
        return self.live.get(player_id) or LiveStat(player_id=player_id)

    @property
    def started_fixtures(self) -> List[Fixture]:
        return [f for f in self.fixtures if f.started]

    @property
    def has_live_fixtures(self) -> bool:
        return any(f.is_live for f in self.fixtures)


# =============================================================================
# DERIVED RESULTS - recomputed every poll, never stored
# =============================================================================

@dataclass
class BonusAllocation:
    """One player's place in a fixture's BPS ranking."""
    player_id: int
    effective_bps: int
    bonus: int
    is_predicted: bool = False


@dataclass
class FixtureBonusTable:
    fixture: Fixture
    allocations: List[BonusAllocation] = field(default_factory=list)

    @property
    def total_bonus(self) -> int:
        return sum(a.bonus for a in self.allocations)


@dataclass
class GameweekBPSSummary:
    active_players: int = 0
    average_bps: int = 0
    highest_bps: int = 0
    predicted_players: int = 0
    total_bonus_awarded: int = 0


@dataclass
class BPSLeaderboardEntry:
    player_id: int
    effective_bps: int
    is_predicted: bool = False


@dataclass
class LivePlayerRow:
    """One row of the live player table."""
    player: Player
    stats: LiveStat
    effective_bps: int
    is_predicted: bool = False


@dataclass
class DefensiveContributionRecord:
    player_id: int
    position: Position
    contributions: int
    threshold: int
    bonus: int
    progress: float  # 0.0-1.0 toward the next milestone
    saves: int = 0

    @property
    def milestone_met(self) -> bool:
        return self.bonus > 0

    @property
    def progress_percent(self) -> float:
        return round(self.progress * 100, 1)


@dataclass
class TeamDefensiveSide:
    team: int
    goals_against: int
    clean_sheet: bool
    defcon_level: int
    keeper_saves: int
    players: List[DefensiveContributionRecord] = field(default_factory=list)


@dataclass
class FixtureDefensiveSummary:
    fixture: Fixture
    home: TeamDefensiveSide
    away: TeamDefensiveSide


@dataclass
class GameweekDefensiveSummary:
    total_clean_sheets: int = 0
    total_keeper_saves: int = 0
    average_defcon: float = 0.0  # per team, 1 dp
    teams_active: int = 0


@dataclass
class LivePick:
    """A squad pick after auto-subs and captaincy have been applied."""
    pick: SquadPick
    player: Player
    minutes: int = 0
    live_points: int = 0
    multiplier: int = 0
    is_auto_subbed: bool = False
    is_subbed_out: bool = False

    @property
    def effective_points(self) -> int:
        if self.is_subbed_out:
            return 0
        return self.live_points * self.multiplier


@dataclass
class LiveSquadResult:
    picks: List[LivePick]
    total_points: int
    transfer_cost: int = 0
    active_chip: Optional[str] = None

    @property
    def auto_subs(self) -> List[LivePick]:
        return [p for p in self.picks if p.is_auto_subbed]


# ============ RESPONSE SCHEMAS ============
# These provide contract stability between frontend and backend

class BonusPlayerResponse(BaseModel):
    id: int
    name: str
    team_id: int
    position: str
    minutes: int
    bps: int
    bps_predicted: bool
    bonus: int


class FixtureBonusResponse(BaseModel):
    fixture_id: int
    team_h: int
    team_a: int
    team_h_score: Optional[int] = None
    team_a_score: Optional[int] = None
    finished: bool
    minutes: int
    players: List[BonusPlayerResponse]


class DefensivePlayerResponse(BaseModel):
    id: int
    name: str
    position: str
    contributions: int
    threshold: int
    bonus: int
    milestone_met: bool
    progress_percent: float
    saves: int


class DefensiveSideResponse(BaseModel):
    team_id: int
    goals_against: int
    clean_sheet: bool
    defcon_level: int
    defcon_label: str
    keeper_saves: int
    players: List[DefensivePlayerResponse]


class FixtureDefensiveResponse(BaseModel):
    fixture_id: int
    finished: bool
    home: DefensiveSideResponse
    away: DefensiveSideResponse


class LivePickResponse(BaseModel):
    id: int
    name: str
    position: str
    slot: int
    is_captain: bool
    is_vice_captain: bool
    minutes: int
    live_points: int
    multiplier: int
    effective_points: int
    is_auto_subbed: bool
    is_subbed_out: bool


class LiveSquadResponse(BaseModel):
    manager_id: int
    gameweek: int
    active_chip: Optional[str] = None
    transfer_cost: int
    total_points: int
    has_live_fixtures: bool
    picks: List[LivePickResponse]


class DefensiveGameweekSummaryResponse(BaseModel):
    total_clean_sheets: int
    total_keeper_saves: int
    average_defcon: float
    teams_active: int


class DefensiveGameweekResponse(BaseModel):
    gameweek: int
    summary: DefensiveGameweekSummaryResponse
    fixtures: List[FixtureDefensiveResponse]


class TopBPSPlayerResponse(BaseModel):
    id: int
    name: str
    team_id: int
    position: str
    minutes: int
    bps: int
    bps_predicted: bool


class TopBPSResponse(BaseModel):
    gameweek: int
    min_bps: int
    players: List[TopBPSPlayerResponse]


class LivePlayerResponse(BaseModel):
    id: int
    name: str
    team_id: int
    position: str
    minutes: int
    total_points: int
    bps: int
    bps_predicted: bool
    goals_scored: int
    assists: int


class LivePlayersResponse(BaseModel):
    gameweek: int
    total_matches: int
    players: List[LivePlayerResponse]
