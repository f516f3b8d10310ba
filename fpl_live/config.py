from dataclasses import dataclass, field
from typing import Dict, List


# =============================================================================
# SCORING RULES - one ruleset per season, engine code never hard-codes points
# =============================================================================

@dataclass
class BPSRules:
    """
    Bonus Points System coefficients used to predict a player's BPS while
    the authoritative value is still 0.

    Position keys follow FPL element_type: 1 GKP, 2 DEF, 3 MID, 4 FWD.
    """

    # Appearance
    minutes_played: int = 3
    minutes_long_spell: int = 3          # on top of minutes_played
    long_spell_threshold: int = 60

    # Goals - penalties are flat, open play depends on position
    penalty_goal: int = 12
    open_play_goal: Dict[int, int] = field(default_factory=lambda: {
        1: 12, 2: 12, 3: 18, 4: 24
    })
    assist: int = 9

    # Keeper saves. Fallback used when the inside/outside split is missing
    save_inside_box: int = 3
    save_outside_box: int = 2
    save_fallback: int = 2

    tackle: int = 2
    goalline_clearance: int = 9

    clean_sheet: Dict[int, int] = field(default_factory=lambda: {
        1: 12, 2: 12, 3: 6, 4: 0
    })

    penalty_saved: int = 8
    penalty_missed: int = -6
    yellow_card: int = -3
    red_card: int = -9
    own_goal: int = -6

    # Only keepers and defenders are charged for goals conceded
    goal_conceded: Dict[int, int] = field(default_factory=lambda: {
        1: -4, 2: -4
    })


@dataclass
class DefensiveContributionRules:
    """
    Defensive contribution (DEFCON) milestones.

    GKP: +1 per `keeper_saves_per_point` saves, uncapped.
    DEF: CBIT >= def_threshold -> flat milestone_points.
    MID/FWD: CBIT + recoveries >= mid_fwd_threshold -> flat milestone_points.
    """
    keeper_saves_per_point: int = 3
    def_threshold: int = 10
    mid_fwd_threshold: int = 12
    milestone_points: int = 2


@dataclass
class ScoringRules:
    """Everything that varies between seasons, bundled under one key."""
    season: str
    bps: BPSRules = field(default_factory=BPSRules)
    defensive: DefensiveContributionRules = field(default_factory=DefensiveContributionRules)
    # Awarded to BPS ranks 1, 2, 3 - ties consume slots
    bonus_pool: List[int] = field(default_factory=lambda: [3, 2, 1])


# Registered rulesets. Add a new season by appending a ScoringRules entry;
# the algorithms pick it up through get_scoring_rules().
SCORING_RULES: Dict[str, ScoringRules] = {
    "2025": ScoringRules(season="2025"),
}


# =============================================================================
# SQUAD / NETWORK / POLLING CONFIGURATION
# =============================================================================

@dataclass
class FormationConfig:
    """Auto-substitution constraints."""
    min_def: int = 3
    min_mid: int = 2
    min_fwd: int = 1
    first_bench_slot: int = 12
    bench_boost_chip: str = "bboost"


@dataclass
class ApiConfig:
    """FPL API client settings."""
    base_url: str = "https://fantasy.premierleague.com/api"
    timeout: float = 30.0
    max_keepalive_connections: int = 20
    max_connections: int = 50
    user_agent: str = "FPL-Live/1.0"

    max_retries: int = 3
    retry_base_delay: float = 1.0

    # Circuit breaker: after `threshold` exhausted retries, fail fast
    circuit_threshold: int = 3
    circuit_cooldown: int = 60

    # Cache TTLs (seconds). Live data moves every minute during matches
    bootstrap_ttl: int = 300
    fixtures_ttl: int = 60
    live_ttl: int = 30


@dataclass
class PollingConfig:
    """
    Live refresh loop owned by the caller.

    After a failed poll the wait is min(retry_base_delay * 2^n, retry_max_delay)
    where n is the number of consecutive failures; a success resets n.
    """
    refresh_interval: float = 90.0
    retry_base_delay: float = 10.0
    retry_max_delay: float = 120.0

    # When a manager has no picks for the requested GW, try this many earlier GWs
    picks_fallback_gameweeks: int = 2


# Initialize global config
ENGINE_CONFIG = {
    "formation": FormationConfig(),
    "api": ApiConfig(),
    "polling": PollingConfig(),
}
