"""
FPL Live - Squad Module

Live squad scoring: automatic substitutions under formation constraints,
captain armband failover and the squad total.
"""

import logging
from collections import Counter
from typing import Optional, List, Dict

from fpl_live.config import ENGINE_CONFIG, FormationConfig
from fpl_live.models import (
    Position, Squad, StatSnapshot, LivePick, LiveSquadResult,
)

logger = logging.getLogger("fpl_live")


def _formation_is_legal(formation: Counter, config: FormationConfig) -> bool:
    return (
        formation[Position.DEF] >= config.min_def and
        formation[Position.MID] >= config.min_mid and
        formation[Position.FWD] >= config.min_fwd
    )


def enrich_picks(snapshot: StatSnapshot, squad: Squad) -> List[LivePick]:
    """
    Join picks with reference data and live stats, in slot order.

    Unresolvable players get a placeholder so one bad id never blocks
    scoring the rest of the squad.
    """
    enriched = []
    for pick in sorted(squad.picks, key=lambda p: p.slot):
        if pick.element not in snapshot.players:
            logger.warning(f"Player {pick.element} missing from reference data, using placeholder")
        stats = snapshot.live_stat(pick.element)
        enriched.append(LivePick(
            pick=pick,
            player=snapshot.player(pick.element),
            minutes=stats.minutes,
            live_points=stats.total_points,
            multiplier=pick.multiplier,
        ))
    return enriched


def simulate_auto_subs(
    picks: List[LivePick],
    active_chip: Optional[str] = None,
    config: FormationConfig = None,
) -> List[LivePick]:
    """
    Apply automatic substitutions to enriched picks (mutates and returns them).

    Bench boost: every multiplier is raised to at least 1 and nothing is
    substituted. Otherwise the keeper swap runs first, then each zero-minute
    starting outfielder (in slot order) is replaced by the first unused bench
    outfielder with minutes whose promotion leaves the live formation legal.
    A starter with no legal replacement simply scores nothing.

    The bench is rescanned from the top for every starter, so a candidate
    rejected for one starter can still replace a later one. This differs
    from the earlier web tracker's single bench cursor, which dropped
    rejected candidates for good, whenever two absentees play different
    positions.
    """
    config = config or ENGINE_CONFIG["formation"]

    if active_chip == config.bench_boost_chip:
        for p in picks:
            p.multiplier = max(1, p.multiplier)
        return picks

    starters = [p for p in picks if p.pick.is_starter]
    bench = [p for p in picks if not p.pick.is_starter]

    # Keeper swap
    starting_gkp = next((p for p in starters if p.player.position == Position.GKP), None)
    bench_gkp = next((p for p in bench if p.player.position == Position.GKP), None)
    if starting_gkp and bench_gkp and starting_gkp.minutes == 0 and bench_gkp.minutes > 0:
        starting_gkp.is_subbed_out = True
        starting_gkp.multiplier = 0
        bench_gkp.is_auto_subbed = True
        bench_gkp.multiplier = 1
        logger.debug(f"Auto-sub GKP: {bench_gkp.player.web_name} for {starting_gkp.player.web_name}")

    # Outfield swaps
    formation = Counter(
        p.player.position for p in starters
        if p.player.position.is_outfield and p.minutes > 0
    )
    missing = [
        p for p in starters
        if p.player.position != Position.GKP and p.minutes == 0
    ]
    candidates = [p for p in bench if p.player.position.is_outfield]

    for starter in missing:
        for sub in candidates:
            if sub.is_auto_subbed or sub.minutes == 0:
                continue

            trial = formation.copy()
            trial[sub.player.position] += 1
            if not _formation_is_legal(trial, config):
                continue

            starter.is_subbed_out = True
            starter.multiplier = 0
            sub.is_auto_subbed = True
            sub.multiplier = 1
            formation = trial
            logger.debug(f"Auto-sub: {sub.player.web_name} for {starter.player.web_name}")
            break

    return picks


def resolve_captaincy(picks: List[LivePick]) -> List[LivePick]:
    """
    Armband failover, one level deep.

    A subbed-out captain scores nothing; a playing vice-captain (a starter
    with minutes, or one promoted from the bench) then takes the double
    multiplier. There is no further fallback.
    """
    captain = next((p for p in picks if p.pick.is_captain), None)
    vice = next((p for p in picks if p.pick.is_vice_captain), None)

    if captain and captain.is_subbed_out:
        captain.multiplier = 0
        if vice and not vice.is_subbed_out:
            if vice.is_auto_subbed or (vice.pick.is_starter and vice.minutes > 0):
                vice.multiplier = 2

    return picks


def aggregate_squad_score(picks: List[LivePick], transfer_cost: int = 0) -> int:
    """Sum of live points x multiplier over picks still in the side, minus hits."""
    return sum(p.effective_points for p in picks if not p.is_subbed_out) - transfer_cost


def calculate_live_squad(
    snapshot: StatSnapshot,
    squad: Optional[Squad] = None,
    bonus: Optional[Dict[int, int]] = None,
    config: FormationConfig = None,
) -> LiveSquadResult:
    """
    Score one squad against a snapshot.

    `bonus` optionally adds provisional bonus (player_id -> points) to
    players whose authoritative bonus is still 0.
    """
    squad = squad or snapshot.squad
    if squad is None:
        return LiveSquadResult(picks=[], total_points=0)

    picks = enrich_picks(snapshot, squad)
    if bonus:
        for p in picks:
            if snapshot.live_stat(p.player.id).bonus == 0:
                p.live_points += bonus.get(p.player.id, 0)

    simulate_auto_subs(picks, squad.active_chip, config)
    resolve_captaincy(picks)

    for p in picks:
        if p.is_subbed_out:
            p.multiplier = 0

    return LiveSquadResult(
        picks=picks,
        total_points=aggregate_squad_score(picks, squad.transfer_cost),
        transfer_cost=squad.transfer_cost,
        active_chip=squad.active_chip,
    )
