"""Round lifecycle, settlement and ranking logic for the investment game."""

import logging
import re
import threading
from typing import Dict, Any, Optional, List, Tuple

import numpy as np

from config.game_config import ROUNDS, STARTUPS, GAME_CONFIG, team_ids
from models import db
from models.schemas import TeamRound, StartupRound, RoundState, TeamUpdateData
from utils.random import bounded_normal, round_half_up

logger = logging.getLogger(__name__)

_TEAM_RE = re.compile(r"^team([1-9]\d?)$")


class GameError(Exception):
    """Base class for rule violations; carries the HTTP status the API should answer with."""

    status_code = 400


class InvalidRoundError(GameError):
    pass


class InvalidTeamError(GameError):
    pass


class RoundStateError(GameError):
    pass


class SubmissionError(GameError):
    pass


class NotFoundError(GameError):
    status_code = 404


def validate_round(round_id: Optional[str]) -> str:
    if round_id not in ROUNDS:
        raise InvalidRoundError(f"Invalid round parameter: {round_id}. Must be one of: {', '.join(ROUNDS)}")
    return round_id


def validate_team(team: Optional[str]) -> str:
    match = _TEAM_RE.match(team or "")
    if not match or not 1 <= int(match.group(1)) <= GAME_CONFIG["team_count"]:
        raise InvalidTeamError(f"Invalid team parameter: {team}. Must be team1-team{GAME_CONFIG['team_count']}.")
    return team


def validate_startup(startup: Optional[str]) -> str:
    if startup not in STARTUPS:
        raise GameError(f"Invalid startup parameter: {startup}. Must be one of: {', '.join(STARTUPS)}")
    return startup


def previous_round(round_id: str) -> Optional[str]:
    idx = ROUNDS.index(round_id)
    return ROUNDS[idx - 1] if idx > 0 else None


class GameService:
    """Operations an admin or team can perform on the game state."""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng or np.random.default_rng()
        self._lock = threading.RLock()

    # --- Reads ---

    def get_round_states(self) -> List[RoundState]:
        return [RoundState.from_row(r) for r in db.get_round_states()]

    def get_round_status(self, round_id: str) -> str:
        status = db.get_round_status(validate_round(round_id))
        if status is None:
            raise NotFoundError(f"Round {round_id} not found")
        return status

    def list_teams(self, round_id: str) -> List[TeamRound]:
        return [TeamRound.from_row(r) for r in db.get_teams_for_round(validate_round(round_id))]

    def get_team(self, round_id: str, team: str) -> TeamRound:
        row = db.get_team(validate_round(round_id), team)
        if row is None:
            raise NotFoundError("Team not found")
        return TeamRound.from_row(row)

    def list_startups(self, round_id: str) -> List[StartupRound]:
        return [StartupRound.from_row(r) for r in db.get_startups(validate_round(round_id))]

    def have_all_teams_submitted(self, round_id: str) -> bool:
        submitted, total = db.count_submissions(validate_round(round_id))
        return total > 0 and submitted == total

    # --- Team writes ---

    def submit_portfolio(self, round_id: str, team: str, allocation: Dict[str, int]) -> TeamRound:
        """Store a team's allocations for an open round and mark it submitted."""
        validate_round(round_id)
        status = self.get_round_status(round_id)
        if status != "open":
            raise RoundStateError(f"Round {round_id} is {status}; portfolios can only be submitted while it is open")
        current = self.get_team(round_id, team)
        if any(v < 0 for v in allocation.values()):
            raise SubmissionError("Allocations must not be negative")
        total = sum(allocation.values())
        budget = current.pre_fund or 0
        if total > budget:
            raise SubmissionError(f"Total allocation {total} exceeds available fund {budget}")
        db.update_team(round_id, team, submitted=True, **{s: int(allocation.get(s, 0)) for s in STARTUPS})
        logger.info(f"Team {team} submitted {round_id}: {total} of {budget} invested")
        return self.get_team(round_id, team)

    def toggle_submission(self, round_id: str, team: str) -> Tuple[bool, TeamRound]:
        """Flip a team's submitted flag. Returns (previous_status, updated_team)."""
        current = self.get_team(round_id, team)
        if not current.submitted:
            _check_within_fund(current)
        db.update_team(round_id, team, submitted=not current.submitted)
        updated = self.get_team(round_id, team)
        logger.info(f"Toggled submission for {team} in {round_id}: {current.submitted} -> {updated.submitted}")
        return current.submitted, updated

    def mark_all_submitted(self, round_id: str) -> List[str]:
        for t in self.list_teams(round_id):
            if not t.submitted:
                _check_within_fund(t)
        teams = db.set_all_submitted(round_id, True)
        logger.info(f"Marked {len(teams)} teams as submitted for {round_id}")
        return teams

    def admin_update_team(self, round_id: str, team: str, data: Dict[str, Any]) -> TeamRound:
        """Apply an admin override to a team row; unknown or invalid fields are rejected."""
        validate_round(round_id)
        fields = TeamUpdateData.model_validate(data).model_dump(exclude_none=True)
        if not fields:
            raise GameError("No fields provided")
        merged = self.get_team(round_id, team).model_copy(update=fields)
        if merged.submitted:
            _check_within_fund(merged)
        db.update_team(round_id, team, **fields)
        logger.info(f"Admin updated {team} in {round_id}: {fields}")
        return self.get_team(round_id, team)

    # --- Round lifecycle ---

    def open_round(self, round_id: str) -> RoundState:
        """Open a locked round.

        Rounds after the first require the previous round to be closed; each
        team's settled fund from that round becomes its starting fund here.
        """
        validate_round(round_id)
        prev = previous_round(round_id)
        with self._lock, db.get_connection() as conn:
            if prev is not None:
                prev_status = db.get_round_status(prev, conn=conn)
                if prev_status != "closed":
                    raise RoundStateError(f"Cannot open {round_id}: previous round {prev} is {prev_status}")
            if not db.transition_round_status(round_id, "locked", "open", conn=conn):
                status = db.get_round_status(round_id, conn=conn)
                raise RoundStateError(f"Cannot open {round_id}: round is {status}, expected locked")
            if prev is not None:
                carried = 0
                for row in db.get_teams_for_round(prev, conn=conn):
                    fund = row["post_fund"] if row["post_fund"] is not None else row["pre_fund"]
                    db.update_team(
                        round_id, row["team"], conn=conn,
                        pre_fund=fund, post_fund=None, submitted=False,
                        **{s: 0 for s in STARTUPS},
                    )
                    carried += 1
                logger.info(f"Carried {carried} team funds from {prev} into {round_id}")
        logger.info(f"Round {round_id} opened")
        return RoundState(round=round_id, status="open")

    def close_round(self, round_id: str) -> Dict[str, Any]:
        """Close an open round whose teams have all submitted, and settle it.

        The status change and settlement share one transaction, so a round can
        only be settled once.
        """
        validate_round(round_id)
        with self._lock, db.get_connection() as conn:
            if not db.transition_round_status(round_id, "open", "closed", conn=conn):
                status = db.get_round_status(round_id, conn=conn)
                raise RoundStateError(f"Cannot close {round_id}: round is {status}, expected open")
            submitted, total = db.count_submissions(round_id, conn=conn)
            if total == 0 or submitted != total:
                raise SubmissionError("Not all teams have submitted their portfolio")
            result = self.settle_round(round_id, conn=conn)
        logger.info(f"Round {round_id} closed")
        return result

    def settle_round(self, round_id: str, conn=None) -> Dict[str, Any]:
        """Draw startup yields and recompute every team's fund for a round.

        ``pre_cap`` is the total submitted investment per startup. Submitted
        teams get ``sum(round(alloc * (1 + yield))) + (pre_fund - invested)``;
        teams that did not submit keep ``pre_fund``.
        """
        validate_round(round_id)
        with db.use_connection(conn) as c:
            teams = [TeamRound.from_row(r) for r in db.get_teams_for_round(round_id, conn=c)]
            submitted = [t for t in teams if t.submitted]
            if not submitted:
                raise SubmissionError(f"Cannot settle {round_id}: no team has submitted")

            yields: Dict[str, float] = {}
            startups: List[Dict[str, Any]] = []
            for s in STARTUPS:
                pre_cap = sum(t.allocations()[s] for t in submitted)
                y = round(
                    bounded_normal(
                        GAME_CONFIG["yield_mean"],
                        GAME_CONFIG["yield_sd"],
                        GAME_CONFIG["yield_min"],
                        GAME_CONFIG["yield_max"],
                        rng=self.rng,
                        max_attempts=GAME_CONFIG["yield_max_attempts"],
                    ),
                    GAME_CONFIG["yield_decimals"],
                )
                post_cap = round_half_up(pre_cap * (1 + y))
                db.update_startup(round_id, s, conn=c, pre_cap=pre_cap, post_cap=post_cap, **{"yield": y})
                yields[s] = y
                startups.append({"startup": s, "pre_cap": pre_cap, "yield": y, "post_cap": post_cap})

            funds: Dict[str, int] = {}
            for t in teams:
                pre_fund = t.pre_fund or 0
                post_fund = compute_post_fund(pre_fund, t.allocations(), yields) if t.submitted else pre_fund
                db.update_team(round_id, t.team, conn=c, post_fund=post_fund)
                funds[t.team] = post_fund

        logger.info(f"Settled {round_id}: yields={yields}, {len(submitted)} submitted teams")
        return {"round": round_id, "startups": startups, "post_funds": funds}

    # --- Resets ---

    def reset_rounds(self) -> List[RoundState]:
        rows = db.reset_round_states()
        logger.info("All rounds reset to locked")
        return [RoundState.from_row(r) for r in rows]

    def reset_teams(self) -> None:
        db.reset_team_tables()
        logger.info("All team rows reset")

    def reset_startups(self) -> None:
        db.reset_startup_tables()
        logger.info("All startup rows reset")

    # --- Rankings / results ---

    def investment_data(self, round_id: str, startup: str) -> List[Dict[str, Any]]:
        validate_startup(startup)
        return [
            {"team": t.team, "team_number": i + 1, "investment": t.allocations()[startup]}
            for i, t in enumerate(self.list_teams(round_id))
        ]

    def cumulative_rankings(self, current_round: str) -> List[Dict[str, Any]]:
        """Sum each team's allocations over rounds up to ``current_round`` and rank by its fund there."""
        validate_round(current_round)
        rounds = ROUNDS[: ROUNDS.index(current_round) + 1]
        table: Dict[str, Dict[str, Any]] = {
            team: {"team": team, **{s: 0 for s in STARTUPS}, "post_fund": 0, "total": 0}
            for team in team_ids()
        }
        for r in rounds:
            for t in self.list_teams(r):
                entry = table.get(t.team)
                if entry is None:
                    continue
                for s, amount in t.allocations().items():
                    entry[s] += amount
                if r == current_round:
                    entry["post_fund"] = t.post_fund or 0
        ranked = sorted(table.values(), key=lambda e: e["post_fund"], reverse=True)
        for i, entry in enumerate(ranked):
            entry["total"] = sum(entry[s] for s in STARTUPS)
            entry["rank"] = i + 1
        return ranked

    def team_cumulative(self, team: str, current_round: str) -> Dict[str, Any]:
        """One team's allocations summed over rounds up to ``current_round``."""
        validate_team(team)
        validate_round(current_round)
        totals = {s: 0 for s in STARTUPS}
        pre_fund = 0
        for r in ROUNDS[: ROUNDS.index(current_round) + 1]:
            row = db.get_team(r, team)
            if row is None:
                continue
            t = TeamRound.from_row(row)
            for s, amount in t.allocations().items():
                totals[s] += amount
            if r == current_round:
                pre_fund = t.pre_fund or 0
        return {
            "team": team,
            "currentRound": current_round,
            **totals,
            "total": sum(totals.values()),
            "preFund": pre_fund,
        }

    def final_results(self) -> List[Dict[str, Any]]:
        last = ROUNDS[-1]
        teams = [t for t in self.list_teams(last) if t.post_fund is not None]
        teams.sort(key=lambda t: t.post_fund, reverse=True)
        return [{"team": t.team, "post_fund": t.post_fund, "rank": i + 1} for i, t in enumerate(teams)]

    def team_startup_matching(self, round_id: str) -> Dict[str, Any]:
        """Assign each final-round team to one startup, best fund first.

        A team takes the startup it invested most in that still has capacity;
        equal amounts are ordered randomly. Teams with no eligible investment
        fall back to any startup with capacity.
        """
        validate_round(round_id)
        if round_id != ROUNDS[-1]:
            raise GameError(f"Team-startup matching is only available for round {ROUNDS[-1]}")
        capacity = GAME_CONFIG["matching_capacity"]
        allocation = {s: 0 for s in STARTUPS}
        matches: List[Tuple[str, str]] = []

        teams = sorted(self.list_teams(round_id), key=lambda t: t.post_fund or 0, reverse=True)
        for t in teams:
            if not t.post_fund:
                logger.warning(f"Team {t.team} has no post_fund, skipping")
                continue
            ranked = sorted(t.allocations().items(), key=lambda kv: (-kv[1], self.rng.random()))
            choice = next((s for s, amount in ranked if amount > 0 and allocation[s] < capacity), None)
            if choice is None:
                choice = next((s for s in STARTUPS if allocation[s] < capacity), None)
            if choice is None:
                logger.warning(f"No available startup for team {t.team}")
                continue
            allocation[choice] += 1
            matches.append((t.team, choice))

        db.replace_final_matching(matches)
        logger.info(f"Matched {len(matches)} teams: {allocation}")
        return {
            "total_matches": len(matches),
            "allocation": allocation,
            "matches": [{"team": team, "startup": s} for team, s in matches],
        }

    def get_final_matching(self) -> List[Dict[str, str]]:
        return [{"team": r["team"], "startup": r["startup"]} for r in db.get_final_matching()]


def _check_within_fund(team: TeamRound) -> None:
    budget = team.pre_fund or 0
    if team.invested > budget:
        raise SubmissionError(
            f"Total allocation {team.invested} of {team.team} exceeds available fund {budget}"
        )


def compute_post_fund(pre_fund: int, allocations: Dict[str, int], yields: Dict[str, float]) -> int:
    invested = sum(allocations.values())
    returned = sum(round_half_up(amount * (1 + yields[s])) for s, amount in allocations.items())
    return returned + (pre_fund - invested)


# Global service instance
_game_service: Optional[GameService] = None


def get_game_service() -> GameService:
    """Get the global game service instance."""
    global _game_service
    if _game_service is None:
        _game_service = GameService()
    return _game_service
