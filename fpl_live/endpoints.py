"""
FPL Live - Endpoints Module

FastAPI app exposing the live scoring engine. Every request builds a fresh
snapshot and recomputes all derived results.
"""

import os
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional, List

from fastapi import FastAPI, HTTPException, Query, Path
from fastapi.middleware.cors import CORSMiddleware

from fpl_live.constants import (
    DEFCON_LEVEL_LABELS, TOP_BPS_LIMIT, TOP_SCORERS_LIMIT, get_current_season, get_scoring_rules,
)
from fpl_live.models import (
    Position, StatSnapshot, FixtureBonusTable, TeamDefensiveSide, LiveSquadResult, LivePlayerRow,
    BonusPlayerResponse, FixtureBonusResponse,
    DefensivePlayerResponse, DefensiveSideResponse, FixtureDefensiveResponse,
    DefensiveGameweekSummaryResponse, DefensiveGameweekResponse,
    TopBPSPlayerResponse, TopBPSResponse, LivePlayerResponse, LivePlayersResponse,
    LivePickResponse, LiveSquadResponse,
)
from fpl_live.cache import cache
from fpl_live.calculators import (
    build_bonus_tables, build_defensive_summaries, summarise_gameweek_bps, provisional_bonus,
    summarise_gameweek_defence, top_bps_players, live_player_table,
)
from fpl_live.squad import calculate_live_squad
from fpl_live.services import load_stat_snapshot, create_http_client
import fpl_live.services as services_module


logger = logging.getLogger("fpl_live")


# ============ RESPONSE BUILDERS ============

def bonus_table_response(snapshot: StatSnapshot, table: FixtureBonusTable) -> FixtureBonusResponse:
    fixture = table.fixture
    players = []
    for alloc in table.allocations:
        player = snapshot.player(alloc.player_id)
        players.append(BonusPlayerResponse(
            id=player.id,
            name=player.web_name,
            team_id=player.team,
            position=player.position.value,
            minutes=snapshot.live_stat(player.id).minutes,
            bps=alloc.effective_bps,
            bps_predicted=alloc.is_predicted,
            bonus=alloc.bonus,
        ))
    return FixtureBonusResponse(
        fixture_id=fixture.id,
        team_h=fixture.team_h,
        team_a=fixture.team_a,
        team_h_score=fixture.team_h_score,
        team_a_score=fixture.team_a_score,
        finished=fixture.finished,
        minutes=fixture.minutes,
        players=players,
    )


def defensive_side_response(snapshot: StatSnapshot, side: TeamDefensiveSide) -> DefensiveSideResponse:
    return DefensiveSideResponse(
        team_id=side.team,
        goals_against=side.goals_against,
        clean_sheet=side.clean_sheet,
        defcon_level=side.defcon_level,
        defcon_label=DEFCON_LEVEL_LABELS[side.defcon_level],
        keeper_saves=side.keeper_saves,
        players=[
            DefensivePlayerResponse(
                id=r.player_id,
                name=snapshot.player(r.player_id).web_name,
                position=r.position.value,
                contributions=r.contributions,
                threshold=r.threshold,
                bonus=r.bonus,
                milestone_met=r.milestone_met,
                progress_percent=r.progress_percent,
                saves=r.saves,
            )
            for r in side.players
        ],
    )


def live_player_response(row: LivePlayerRow) -> LivePlayerResponse:
    return LivePlayerResponse(
        id=row.player.id,
        name=row.player.web_name,
        team_id=row.player.team,
        position=row.player.position.value,
        minutes=row.stats.minutes,
        total_points=row.stats.total_points,
        bps=row.effective_bps,
        bps_predicted=row.is_predicted,
        goals_scored=row.stats.goals_scored,
        assists=row.stats.assists,
    )


def live_squad_response(
    snapshot: StatSnapshot,
    manager_id: int,
    result: LiveSquadResult,
) -> LiveSquadResponse:
    return LiveSquadResponse(
        manager_id=manager_id,
        gameweek=snapshot.gameweek,
        active_chip=result.active_chip,
        transfer_cost=result.transfer_cost,
        total_points=result.total_points,
        has_live_fixtures=snapshot.has_live_fixtures,
        picks=[
            LivePickResponse(
                id=p.player.id,
                name=p.player.web_name,
                position=p.player.position.value,
                slot=p.pick.slot,
                is_captain=p.pick.is_captain,
                is_vice_captain=p.pick.is_vice_captain,
                minutes=p.minutes,
                live_points=p.live_points,
                multiplier=p.multiplier,
                effective_points=p.effective_points,
                is_auto_subbed=p.is_auto_subbed,
                is_subbed_out=p.is_subbed_out,
            )
            for p in result.picks
        ],
    )


# ============ LIFESPAN ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup - create shared HTTP client
    services_module.http_client = create_http_client()
    logger.info("HTTP client initialized")

    yield

    # Shutdown - close HTTP client
    if services_module.http_client:
        await services_module.http_client.aclose()
        services_module.http_client = None


# ============ APP INITIALIZATION ============

app = FastAPI(title="FPL Live API", version="1.0.0", lifespan=lifespan)

# CORS configuration
# In production, replace "*" with specific origins like ["https://yourdomain.com"]
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,  # Set to True only with specific origins, not "*"
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============ LIVE ENDPOINTS ============

@app.get("/api/live/{gw}/bonus", response_model=List[FixtureBonusResponse])
async def get_live_bonus(
    gw: int = Path(..., ge=1, le=38),
    season: Optional[str] = None,
):
    """Provisional bonus per started fixture, predicted BPS where the authority has none."""
    snapshot = await load_stat_snapshot(gw, season=season)
    rules = get_scoring_rules(snapshot.season)
    return [bonus_table_response(snapshot, t) for t in build_bonus_tables(snapshot, rules)]


@app.get("/api/live/{gw}/defensive", response_model=DefensiveGameweekResponse)
async def get_live_defensive(
    gw: int = Path(..., ge=1, le=38),
    season: Optional[str] = None,
):
    """Defensive contribution milestones and team DEFCON level per fixture, with gameweek totals."""
    snapshot = await load_stat_snapshot(gw, season=season)
    rules = get_scoring_rules(snapshot.season)
    summary = summarise_gameweek_defence(snapshot, rules)
    return DefensiveGameweekResponse(
        gameweek=snapshot.gameweek,
        summary=DefensiveGameweekSummaryResponse(**asdict(summary)),
        fixtures=[
            FixtureDefensiveResponse(
                fixture_id=s.fixture.id,
                finished=s.fixture.finished,
                home=defensive_side_response(snapshot, s.home),
                away=defensive_side_response(snapshot, s.away),
            )
            for s in build_defensive_summaries(snapshot, rules)
        ],
    )


@app.get("/api/live/{gw}/summary")
async def get_live_summary(
    gw: int = Path(..., ge=1, le=38),
    season: Optional[str] = None,
):
    snapshot = await load_stat_snapshot(gw, season=season)
    summary = summarise_gameweek_bps(snapshot, get_scoring_rules(snapshot.season))
    return {
        "gameweek": snapshot.gameweek,
        "has_live_fixtures": snapshot.has_live_fixtures,
        **asdict(summary),
    }


@app.get("/api/live/{gw}/top", response_model=TopBPSResponse)
async def get_live_top_bps(
    gw: int = Path(..., ge=1, le=38),
    season: Optional[str] = None,
    min_bps: int = Query(0, ge=0, description="Leave out players below this BPS"),
    limit: int = Query(TOP_BPS_LIMIT, ge=1, le=100),
):
    """Gameweek BPS leaderboard across all fixtures."""
    snapshot = await load_stat_snapshot(gw, season=season)
    entries = top_bps_players(snapshot, min_bps=min_bps, limit=limit, rules=get_scoring_rules(snapshot.season))
    players = []
    for entry in entries:
        player = snapshot.player(entry.player_id)
        players.append(TopBPSPlayerResponse(
            id=player.id,
            name=player.web_name,
            team_id=player.team,
            position=player.position.value,
            minutes=snapshot.live_stat(player.id).minutes,
            bps=entry.effective_bps,
            bps_predicted=entry.is_predicted,
        ))
    return TopBPSResponse(gameweek=snapshot.gameweek, min_bps=min_bps, players=players)


@app.get("/api/live/{gw}/players", response_model=LivePlayersResponse)
async def get_live_players(
    gw: int = Path(..., ge=1, le=38),
    season: Optional[str] = None,
    position: Optional[str] = Query(None, description="GKP, DEF, MID, FWD or ALL"),
    search: Optional[str] = Query(None, description="Match on web, first or second name"),
    sort_by: str = Query("points", description="points, bps, goals or assists"),
    limit: int = Query(TOP_SCORERS_LIMIT, ge=1, le=100),
):
    """Players with minutes this gameweek, filtered and sorted."""
    position_filter = None
    if position and position.upper() != "ALL":
        try:
            position_filter = Position(position.upper())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid position '{position}'")
        if position_filter == Position.UNKNOWN:
            raise HTTPException(status_code=400, detail=f"Invalid position '{position}'")

    snapshot = await load_stat_snapshot(gw, season=season)
    try:
        rows = live_player_table(
            snapshot,
            position=position_filter,
            search=search,
            sort_by=sort_by,
            rules=get_scoring_rules(snapshot.season),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return LivePlayersResponse(
        gameweek=snapshot.gameweek,
        total_matches=len(rows),
        players=[live_player_response(row) for row in rows[:limit]],
    )


@app.get("/api/live/{gw}/squad/{manager_id}", response_model=LiveSquadResponse)
async def get_live_squad(
    gw: int = Path(..., ge=1, le=38),
    manager_id: int = Path(..., ge=1),
    season: Optional[str] = None,
    provisional: bool = Query(False, description="Add predicted bonus for players without confirmed bonus"),
):
    """Live points for one manager after auto-subs and captaincy."""
    snapshot = await load_stat_snapshot(gw, manager_id=manager_id, season=season)
    bonus = provisional_bonus(snapshot, get_scoring_rules(snapshot.season)) if provisional else None
    result = calculate_live_squad(snapshot, bonus=bonus)
    return live_squad_response(snapshot, manager_id, result)


@app.post("/api/live/refresh")
async def force_live_refresh():
    """Drop cached live payloads so the next request polls the FPL API."""
    cleared = cache.clear_live()
    return {"status": "ok", "gameweeks_cleared": cleared}


@app.get("/api/rules")
async def get_rules(season: Optional[str] = None):
    """Active scoring rules, for transparency."""
    rules = get_scoring_rules(season)
    return {
        "current_season": get_current_season(),
        "ruleset_season": rules.season,
        "bps": asdict(rules.bps),
        "defensive": asdict(rules.defensive),
        "bonus_pool": rules.bonus_pool,
    }


# ============ HEALTH CHECK ============

@app.get("/api/health")
async def health_check():
    """Health check endpoint with cache status."""
    return {
        "status": "ok",
        "cache": {
            "bootstrap_data": cache.bootstrap_data is not None,
            "fixtures_data": cache.fixtures_data is not None,
            "live_gameweeks": sorted(cache.live_data),
        },
        "last_update": cache.last_update.isoformat() if cache.last_update else None,
    }


# ============ MAIN ============

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
