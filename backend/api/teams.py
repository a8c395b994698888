from typing import Optional
import logging

from fastapi import APIRouter, Query

from models.schemas import Allocation
from services.game_service import GameError, validate_round, validate_team
from .common import game, sse, notify, now_iso, game_error_response


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/teams/cumulative")
def get_cumulative_rankings(currentRound: Optional[str] = Query(None)):
    try:
        teams = game().cumulative_rankings(validate_round(currentRound))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": {"currentRound": currentRound, "teams": teams}}


@router.get("/teams/cumulative/{team}")
def get_team_cumulative(team: str, currentRound: Optional[str] = Query(None)):
    try:
        data = game().team_cumulative(team, currentRound)
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": data}


@router.get("/teams/{round}/investment-data")
def get_investment_data(round: str, startup: Optional[str] = Query(None)):
    if not startup:
        return game_error_response(GameError("Startup parameter is required"))
    try:
        data = game().investment_data(validate_round(round), startup)
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": data}


@router.get("/teams/{round}/{team}")
def get_team_data(round: str, team: str):
    try:
        data = game().get_team(validate_round(round), validate_team(team))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": data.model_dump()}


@router.post("/teams/{round}/{team}")
def submit_team_portfolio(round: str, team: str, allocation: Allocation):
    try:
        updated = game().submit_portfolio(validate_round(round), validate_team(team), allocation.model_dump())
    except GameError as e:
        return game_error_response(e)

    notify(
        f"team update for {team}/{round}",
        sse().send_team_update,
        team,
        round,
        {"type": "team_updated", "team": team, "round": round, "data": updated.model_dump(), "timestamp": now_iso()},
    )
    return {"success": True, "data": updated.model_dump(), "message": "Portfolio submitted successfully"}


@router.get("/startup/{round}")
def get_startup_data(round: str):
    try:
        startups = game().list_startups(validate_round(round))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": [s.to_json() for s in startups]}


@router.get("/final-results")
def get_final_results():
    return {"success": True, "data": game().final_results()}
