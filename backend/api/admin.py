"""Admin endpoints: round lifecycle, submissions, resets and final matching."""

from typing import Optional
import logging

from fastapi import APIRouter, Query

from config.game_config import ROUNDS, team_ids
from models.schemas import AdminTeamAction, RoundRequest
from services.game_service import GameError, validate_round, validate_team
from .common import game, sse, notify, now_iso, error_response, game_error_response


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin")

SUPPORTED_TEAM_ACTIONS = ["toggle-submission", "mark-all-submitted", "update"]


@router.get("/round-status")
def get_round_status():
    return {"success": True, "data": [s.model_dump() for s in game().get_round_states()]}


@router.get("/teams/{round}")
def get_teams(round: str):
    try:
        teams = game().list_teams(validate_round(round))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": [t.model_dump() for t in teams]}


def _broadcast_submission(team: str, round: str, submitted: bool) -> None:
    notify(
        f"submission toggle for {team}/{round}",
        sse().send_team_update,
        team,
        round,
        {"type": "submission_toggled", "team": team, "round": round, "submitted": submitted, "timestamp": now_iso()},
    )


@router.post("/teams/{round}")
def post_team_action(round: str, body: AdminTeamAction):
    try:
        validate_round(round)
    except GameError as e:
        return game_error_response(e)

    action = body.action
    team = body.team
    data = body.data
    if not action:
        return error_response(400, "Missing required field: action")

    try:
        if action == "toggle-submission":
            if not team:
                return error_response(400, "Missing required field for toggle-submission: team")
            previous, updated = game().toggle_submission(round, validate_team(team))
            _broadcast_submission(team, round, updated.submitted)
            return {
                "success": True,
                "data": updated.model_dump(),
                "metadata": {"action": action, "round": round, "team": team,
                             "previousStatus": previous, "newStatus": updated.submitted, "timestamp": now_iso()},
            }

        if action == "mark-all-submitted":
            teams = game().mark_all_submitted(round)
            for t in teams:
                _broadcast_submission(t, round, True)
            return {
                "success": True,
                "data": {"totalTeams": len(teams), "successfulUpdates": len(teams), "failedUpdates": 0},
                "metadata": {"action": action, "round": round, "timestamp": now_iso()},
            }

        if action == "update":
            if not team or not isinstance(data, dict):
                return error_response(400, "Missing required fields for update: team and data are required")
            updated = game().admin_update_team(round, validate_team(team), data)
            notify(
                f"admin update for {team}/{round}",
                sse().send_admin_update,
                team,
                round,
                {"type": "team_updated", "team": team, "round": round, "data": updated.model_dump(), "timestamp": now_iso()},
            )
            return {
                "success": True,
                "data": updated.model_dump(),
                "metadata": {"action": action, "round": round, "team": team, "timestamp": now_iso()},
            }
    except GameError as e:
        return game_error_response(e)
    except ValueError as e:
        # pydantic rejects malformed update payloads
        return error_response(400, str(e))

    return error_response(
        400,
        f"Unknown action: {action}. Supported actions: {', '.join(SUPPORTED_TEAM_ACTIONS)}",
        supportedActions=SUPPORTED_TEAM_ACTIONS,
    )


@router.get("/teams/{round}/{team}/submission-status")
def get_submission_status(round: str, team: str):
    try:
        data = game().get_team(validate_round(round), validate_team(team))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": {"team": team, "round": round, "submitted": data.submitted}}


@router.post("/teams/{round}/{team}/toggle-submission")
def toggle_submission(round: str, team: str):
    try:
        previous, updated = game().toggle_submission(validate_round(round), validate_team(team))
    except GameError as e:
        return game_error_response(e)
    _broadcast_submission(team, round, updated.submitted)
    return {
        "success": True,
        "message": f"Successfully toggled submission status for {team} in {round}",
        "data": {
            "team": team,
            "round": round,
            "previousStatus": previous,
            "currentStatus": updated.submitted,
            "updatedTeamData": updated.model_dump(),
        },
    }


@router.get("/have-all-teams-submitted")
def have_all_teams_submitted(round: Optional[str] = Query(None)):
    try:
        all_submitted = game().have_all_teams_submitted(validate_round(round))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "allSubmitted": all_submitted}


@router.get("/startups/{round}")
def get_startups(round: str):
    try:
        startups = game().list_startups(validate_round(round))
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "data": [s.to_json() for s in startups]}


@router.post("/open-round")
def open_round(body: RoundRequest):
    try:
        state = game().open_round(body.round)
    except GameError as e:
        return game_error_response(e)
    notify(f"round opened: {body.round}", sse().broadcast_round_status_update, body.round, "open")
    return {"success": True, "data": state.model_dump()}


@router.post("/close-round")
def close_round(body: RoundRequest):
    try:
        result = game().close_round(body.round)
    except GameError as e:
        return game_error_response(e)
    notify(f"round closed: {body.round}", sse().broadcast_round_status_update, body.round, "closed")
    return {
        "success": True,
        "message": f"Successfully closed {body.round} and updated startup data",
        "data": result,
    }


@router.post("/reset-rounds")
def reset_rounds():
    states = game().reset_rounds()
    for r in ROUNDS:
        notify(f"round reset: {r}", sse().broadcast_round_status_update, r, "locked")
    return {
        "success": True,
        "message": "Successfully reset all rounds to initial state!",
        "data": [s.model_dump() for s in states],
    }


@router.post("/reset-teams")
def reset_teams():
    game().reset_teams()
    for r in ROUNDS:
        for team in team_ids():
            notify(
                f"team reset: {team}/{r}",
                sse().send_team_update,
                team,
                r,
                {"type": "team_data_reset", "team": team, "round": r, "timestamp": now_iso()},
            )
    return {"success": True, "message": "Successfully reset all team data!"}


@router.post("/reset-startups")
def reset_startups():
    game().reset_startups()
    return {"success": True, "message": "Successfully reset all startup data!"}


@router.post("/team-startup-matching")
def team_startup_matching(body: RoundRequest):
    try:
        result = game().team_startup_matching(body.round)
    except GameError as e:
        return game_error_response(e)
    return {"success": True, "message": "Team-startup matching completed successfully", "data": result}


@router.get("/final-matching")
def get_final_matching():
    return {"success": True, "data": game().get_final_matching()}


@router.get("/sse-stats")
def get_sse_stats():
    return {"success": True, "data": sse().get_connection_stats()}
