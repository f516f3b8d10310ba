"""
FPL Live - Constants Module

Lookup tables, FPL identifiers and small utility functions shared by the
engine and the retrieval layer.
"""

import logging
from datetime import datetime
from typing import Optional

from fpl_live.config import ENGINE_CONFIG, SCORING_RULES, ScoringRules

logger = logging.getLogger("fpl_live")


# ============ CONSTANTS ============

FPL_BASE_URL = ENGINE_CONFIG["api"].base_url

# Explain identifier whose values count penalty goals
PENALTY_GOAL_IDENTIFIER = "penalties_scored"

# Chips
CHIP_BENCH_BOOST = ENGINE_CONFIG["formation"].bench_boost_chip
CHIP_TRIPLE_CAPTAIN = "3xc"

FIRST_BENCH_SLOT = ENGINE_CONFIG["formation"].first_bench_slot

# Team defensive condition labels, 1 = worst
DEFCON_LEVEL_LABELS = {
    1: "CRITICAL",
    2: "POOR",
    3: "MODERATE",
    4: "GOOD",
    5: "EXCELLENT",
}

# Live leaderboard sizes
TOP_BPS_LIMIT = 20
TOP_SCORERS_LIMIT = 10


def get_current_season() -> str:
    """
    Derive the current FPL season dynamically.
    FPL season runs Aug-May, so:
    - Before August: previous year's season (e.g., Jan 2026 -> "2025")
    - August onwards: current year's season (e.g., Sep 2025 -> "2025")
    """
    now = datetime.now()
    if now.month < 8:
        return str(now.year - 1)
    return str(now.year)


def get_scoring_rules(season: Optional[str] = None) -> ScoringRules:
    """
    Look up the ruleset for a season.

    No season means the newest registered ruleset. An unknown season also
    falls back to the newest one so a season starting before its table is
    added still scores.
    """
    latest = max(SCORING_RULES)
    if season is None:
        return SCORING_RULES[latest]

    rules = SCORING_RULES.get(season)
    if rules is not None:
        return rules

    logger.warning(f"No scoring rules for season {season}, using {latest}")
    return SCORING_RULES[latest]
