"""
FPL Live - Calculators Module

Per-player and per-fixture rules: BPS prediction, effective BPS, tie-aware
bonus allocation, defensive contribution milestones and fixture summaries.
Everything here is a pure function of a StatSnapshot.
"""

import logging
from typing import Optional, Dict, List, Tuple

from fpl_live.config import BPSRules, DefensiveContributionRules, ScoringRules
from fpl_live.constants import TOP_BPS_LIMIT, get_scoring_rules
from fpl_live.models import (
    Position, LiveStat, Fixture, StatSnapshot,
    BonusAllocation, FixtureBonusTable, GameweekBPSSummary,
    BPSLeaderboardEntry, LivePlayerRow,
    DefensiveContributionRecord, TeamDefensiveSide, FixtureDefensiveSummary,
    GameweekDefensiveSummary,
)

logger = logging.getLogger("fpl_live")


# =============================================================================
# BPS PREDICTION
# =============================================================================

class BonusPredictor:
    """
    Predict a player's BPS from raw live stats.

    Only used while the authority still reports bps == 0. Coefficients come
    from BPSRules so a rule change is a config change.
    """

    def __init__(self, config: BPSRules = None):
        self.config = config or get_scoring_rules().bps

    def predict_bps(self, stats: LiveStat, position: Position) -> int:
        cfg = self.config
        pos_id = position.element_type
        bps = 0

        # Appearance
        if stats.minutes > 0:
            bps += cfg.minutes_played
        if stats.minutes >= cfg.long_spell_threshold:
            bps += cfg.minutes_long_spell

        # Goals: penalties flat, open play by position
        penalty_goals = stats.penalty_goals
        open_play_goals = max(0, stats.goals_scored - penalty_goals)
        bps += penalty_goals * cfg.penalty_goal
        bps += open_play_goals * cfg.open_play_goal.get(pos_id, 0)

        bps += stats.assists * cfg.assist

        if position == Position.GKP:
            bps += self._save_bps(stats)

        bps += stats.tackles * cfg.tackle
        bps += stats.goalline_clearances * cfg.goalline_clearance

        if stats.clean_sheets > 0:
            bps += cfg.clean_sheet.get(pos_id, 0)

        bps += stats.penalties_saved * cfg.penalty_saved
        bps += stats.penalties_missed * cfg.penalty_missed
        bps += stats.yellow_cards * cfg.yellow_card
        bps += stats.red_cards * cfg.red_card
        bps += stats.own_goals * cfg.own_goal
        bps += stats.goals_conceded * cfg.goal_conceded.get(pos_id, 0)

        return max(0, bps)

    def _save_bps(self, stats: LiveStat) -> int:
        cfg = self.config
        if stats.has_save_breakdown:
            inside = stats.saves_inside_box or 0
            outside = stats.saves_outside_box or 0
            return inside * cfg.save_inside_box + outside * cfg.save_outside_box
        # Feed without the split: flat rate per save
        return stats.saves * cfg.save_fallback


def is_bps_predicted(stats: LiveStat) -> bool:
    """True while the authority has not published a BPS for this player."""
    return stats.bps <= 0


def resolve_effective_bps(
    stats: LiveStat,
    position: Position,
    rules: Optional[ScoringRules] = None,
) -> int:
    """Authoritative BPS when published, otherwise the prediction. Never blended."""
    if not is_bps_predicted(stats):
        return stats.bps
    predictor = BonusPredictor(rules.bps) if rules else bonus_predictor
    return predictor.predict_bps(stats, position)


# =============================================================================
# BONUS ALLOCATION
# =============================================================================

def allocate_bonus(
    ranked: List[Tuple[int, int]],
    bonus_pool: Optional[List[int]] = None,
) -> Dict[int, int]:
    """
    Allocate bonus points for one fixture.

    `ranked` holds (player_id, effective_bps) pairs. Players sharing a BPS
    value all receive the award at the current pool cursor, and the cursor
    moves past as many slots as there were tied players:

        [40, 40, 35]     -> 3, 3, 1
        [40, 40, 40, 30] -> 3, 3, 3, 0

    Returns player_id -> bonus for every player in `ranked`.
    """
    pool = bonus_pool if bonus_pool is not None else get_scoring_rules().bonus_pool
    ordered = sorted(ranked, key=lambda x: -x[1])
    awarded = {pid: 0 for pid, _ in ordered}

    cursor = 0
    i = 0
    while i < len(ordered) and cursor < len(pool):
        value = ordered[i][1]
        run_end = i
        while run_end < len(ordered) and ordered[run_end][1] == value:
            run_end += 1

        for pid, _ in ordered[i:run_end]:
            awarded[pid] = pool[cursor]

        cursor += run_end - i
        i = run_end

    return awarded


def fixture_participants(snapshot: StatSnapshot, fixture_id: int) -> List[LiveStat]:
    """Players with minutes who appear in the fixture's explain data."""
    return [
        stats for stats in snapshot.live.values()
        if stats.minutes > 0 and stats.played_in(fixture_id)
    ]


def build_fixture_bonus_table(
    snapshot: StatSnapshot,
    fixture: Fixture,
    rules: Optional[ScoringRules] = None,
) -> FixtureBonusTable:
    rules = rules or get_scoring_rules(snapshot.season)
    predictor = BonusPredictor(rules.bps)

    scored = []
    for stats in fixture_participants(snapshot, fixture.id):
        predicted = is_bps_predicted(stats)
        if predicted:
            bps = predictor.predict_bps(stats, snapshot.player(stats.player_id).position)
        else:
            bps = stats.bps
        scored.append((stats.player_id, bps, predicted))

    # Stable sort keeps feed order among equal BPS
    scored.sort(key=lambda x: -x[1])
    bonus = allocate_bonus([(pid, bps) for pid, bps, _ in scored], rules.bonus_pool)

    return FixtureBonusTable(
        fixture=fixture,
        allocations=[
            BonusAllocation(player_id=pid, effective_bps=bps, bonus=bonus[pid], is_predicted=predicted)
            for pid, bps, predicted in scored
        ],
    )


def build_bonus_tables(
    snapshot: StatSnapshot,
    rules: Optional[ScoringRules] = None,
) -> List[FixtureBonusTable]:
    """Bonus tables for every started fixture that has participants."""
    tables = []
    for fixture in snapshot.started_fixtures:
        table = build_fixture_bonus_table(snapshot, fixture, rules)
        if table.allocations:
            tables.append(table)
    return tables


def provisional_bonus(
    snapshot: StatSnapshot,
    rules: Optional[ScoringRules] = None,
) -> Dict[int, int]:
    """player_id -> bonus summed over the gameweek's fixtures (DGW safe)."""
    totals: Dict[int, int] = {}
    for table in build_bonus_tables(snapshot, rules):
        for alloc in table.allocations:
            totals[alloc.player_id] = totals.get(alloc.player_id, 0) + alloc.bonus
    return totals


def summarise_gameweek_bps(
    snapshot: StatSnapshot,
    rules: Optional[ScoringRules] = None,
) -> GameweekBPSSummary:
    rules = rules or get_scoring_rules(snapshot.season)
    predictor = BonusPredictor(rules.bps)

    active = [s for s in snapshot.live.values() if s.minutes > 0]
    if not active:
        return GameweekBPSSummary()

    values = []
    predicted = 0
    for stats in active:
        if is_bps_predicted(stats):
            predicted += 1
            values.append(predictor.predict_bps(stats, snapshot.player(stats.player_id).position))
        else:
            values.append(stats.bps)

    return GameweekBPSSummary(
        active_players=len(active),
        # Halves round up; values are never negative
        average_bps=(2 * sum(values) + len(values)) // (2 * len(values)),
        highest_bps=max(values),
        predicted_players=predicted,
        total_bonus_awarded=sum(t.total_bonus for t in build_bonus_tables(snapshot, rules)),
    )


# =============================================================================
# LIVE PLAYER TABLES
# =============================================================================

# sort_by key -> value read off a LivePlayerRow
LIVE_TABLE_SORT_KEYS = {
    "points": lambda row: row.stats.total_points,
    "bps": lambda row: row.effective_bps,
    "goals": lambda row: row.stats.goals_scored,
    "assists": lambda row: row.stats.assists,
}


def _active_rows(snapshot: StatSnapshot, predictor: BonusPredictor) -> List[LivePlayerRow]:
    """Players with minutes and reference data, with their effective BPS."""
    rows = []
    for stats in snapshot.live.values():
        if stats.minutes <= 0:
            continue
        player = snapshot.players.get(stats.player_id)
        if player is None:
            continue
        predicted = is_bps_predicted(stats)
        bps = predictor.predict_bps(stats, player.position) if predicted else stats.bps
        rows.append(LivePlayerRow(player=player, stats=stats, effective_bps=bps, is_predicted=predicted))
    return rows


def top_bps_players(
    snapshot: StatSnapshot,
    min_bps: int = 0,
    limit: int = TOP_BPS_LIMIT,
    rules: Optional[ScoringRules] = None,
) -> List[BPSLeaderboardEntry]:
    """
    Gameweek BPS leaderboard across every fixture.

    Players who have not played are left out. Ties keep feed order.
    """
    rules = rules or get_scoring_rules(snapshot.season)
    rows = [
        row for row in _active_rows(snapshot, BonusPredictor(rules.bps))
        if row.effective_bps >= min_bps
    ]
    rows.sort(key=lambda row: -row.effective_bps)
    return [
        BPSLeaderboardEntry(player_id=row.player.id, effective_bps=row.effective_bps, is_predicted=row.is_predicted)
        for row in rows[:limit]
    ]


def live_player_table(
    snapshot: StatSnapshot,
    position: Optional[Position] = None,
    search: Optional[str] = None,
    sort_by: str = "points",
    rules: Optional[ScoringRules] = None,
) -> List[LivePlayerRow]:
    """
    Every player with minutes this gameweek, filtered and sorted descending.

    `search` matches web, first or second name case-insensitively. The caller
    slices the result, so the full match count stays available.
    """
    if sort_by not in LIVE_TABLE_SORT_KEYS:
        raise ValueError(f"Unknown sort key '{sort_by}', expected one of {sorted(LIVE_TABLE_SORT_KEYS)}")
    rules = rules or get_scoring_rules(snapshot.season)

    rows = _active_rows(snapshot, BonusPredictor(rules.bps))
    if position is not None:
        rows = [row for row in rows if row.player.position == position]
    if search:
        rows = [row for row in rows if row.player.matches(search)]

    key = LIVE_TABLE_SORT_KEYS[sort_by]
    rows.sort(key=lambda row: -key(row))
    return rows

# =============================================================================
# DEFENSIVE CONTRIBUTIONS
# =============================================================================

class DefensiveContributionEvaluator:
    """
    Milestone bonuses from defensive actions.

    GKP: +1 per 3 saves, uncapped.
    DEF: CBIT (clearances, blocks, interceptions, tackles) >= 10 -> +2.
    MID/FWD: CBIT + recoveries >= 12 -> +2.
    Outfield milestones do not stack.
    """

    def __init__(self, config: DefensiveContributionRules = None):
        self.config = config or get_scoring_rules().defensive

    def contributions(self, stats: LiveStat, position: Position) -> int:
        cbit = stats.clearances_blocks_interceptions + stats.tackles
        if position == Position.GKP:
            return stats.saves
        if position == Position.DEF:
            return cbit
        if position in (Position.MID, Position.FWD):
            return cbit + stats.recoveries
        return 0

    def evaluate(self, stats: LiveStat, position: Position) -> DefensiveContributionRecord:
        cfg = self.config
        count = self.contributions(stats, position)

        if position == Position.GKP:
            per_point = cfg.keeper_saves_per_point
            bonus = count // per_point
            next_milestone = (bonus + 1) * per_point
            return DefensiveContributionRecord(
                player_id=stats.player_id,
                position=position,
                contributions=count,
                threshold=per_point,
                bonus=bonus,
                progress=min(1.0, count / next_milestone),
                saves=stats.saves,
            )

        if position == Position.DEF:
            threshold = cfg.def_threshold
        elif position in (Position.MID, Position.FWD):
            threshold = cfg.mid_fwd_threshold
        else:
            return DefensiveContributionRecord(
                player_id=stats.player_id, position=position,
                contributions=0, threshold=0, bonus=0, progress=0.0, saves=stats.saves,
            )

        met = count >= threshold
        return DefensiveContributionRecord(
            player_id=stats.player_id,
            position=position,
            contributions=count,
            threshold=threshold,
            bonus=cfg.milestone_points if met else 0,
            progress=1.0 if met else count / threshold,
            saves=stats.saves,
        )


def evaluate_defensive_contribution(
    stats: LiveStat,
    position: Position,
    rules: Optional[ScoringRules] = None,
) -> DefensiveContributionRecord:
    evaluator = DefensiveContributionEvaluator(rules.defensive) if rules else defensive_evaluator
    return evaluator.evaluate(stats, position)


def team_defcon_level(goals_against: int, clean_sheet: bool, finished: bool) -> int:
    """
    Team defensive condition, 1 (critical) to 5 (excellent).

    A finished match grades one step kinder per goal than a live one,
    where more goals may still come.
    """
    if clean_sheet:
        return 5
    if not finished:
        if goals_against == 1:
            return 3
        if goals_against == 2:
            return 2
        return 1
    if goals_against == 1:
        return 4
    if goals_against == 2:
        return 3
    if goals_against == 3:
        return 2
    return 1


def _defensive_side(
    fixture: Fixture,
    team: int,
    goals_against: Optional[int],
    records: List[DefensiveContributionRecord],
) -> TeamDefensiveSide:
    conceded = goals_against or 0
    clean_sheet = goals_against == 0 and fixture.started
    records.sort(key=lambda r: -r.progress)
    return TeamDefensiveSide(
        team=team,
        goals_against=conceded,
        clean_sheet=clean_sheet,
        defcon_level=team_defcon_level(conceded, clean_sheet, fixture.finished),
        keeper_saves=sum(r.saves for r in records if r.position == Position.GKP),
        players=records,
    )


def build_defensive_summaries(
    snapshot: StatSnapshot,
    rules: Optional[ScoringRules] = None,
) -> List[FixtureDefensiveSummary]:
    """Per started fixture: each side's DEFCON records, rating and saves."""
    rules = rules or get_scoring_rules(snapshot.season)
    evaluator = DefensiveContributionEvaluator(rules.defensive)

    summaries = []
    for fixture in snapshot.started_fixtures:
        home: List[DefensiveContributionRecord] = []
        away: List[DefensiveContributionRecord] = []

        for stats in fixture_participants(snapshot, fixture.id):
            player = snapshot.players.get(stats.player_id)
            if player is None:
                continue
            record = evaluator.evaluate(stats, player.position)
            if player.team == fixture.team_h:
                home.append(record)
            elif player.team == fixture.team_a:
                away.append(record)

        summaries.append(FixtureDefensiveSummary(
            fixture=fixture,
            home=_defensive_side(fixture, fixture.team_h, fixture.team_a_score, home),
            away=_defensive_side(fixture, fixture.team_a, fixture.team_h_score, away),
        ))

    return summaries


def summarise_gameweek_defence(
    snapshot: StatSnapshot,
    rules: Optional[ScoringRules] = None,
) -> GameweekDefensiveSummary:
    """Clean sheets, keeper saves and mean DEFCON level over every side that has kicked off."""
    summaries = build_defensive_summaries(snapshot, rules)
    sides = [side for s in summaries for side in (s.home, s.away)]
    if not sides:
        return GameweekDefensiveSummary()

    n = len(sides)
    levels = sum(side.defcon_level for side in sides)
    return GameweekDefensiveSummary(
        total_clean_sheets=sum(1 for side in sides if side.clean_sheet),
        total_keeper_saves=sum(side.keeper_saves for side in sides),
        # One decimal place, halves round up
        average_defcon=((20 * levels + n) // (2 * n)) / 10,
        teams_active=n,
    )


# Initialize global model instances
bonus_predictor = BonusPredictor()
defensive_evaluator = DefensiveContributionEvaluator()
