from __future__ import annotations

import math

import numpy as np
import pytest

from config.game_config import GAME_CONFIG, STARTUPS, team_ids
from models import db
from models.db import set_db_path, init_db
from services.game_service import (
    GameService,
    InvalidRoundError,
    InvalidTeamError,
    NotFoundError,
    RoundStateError,
    SubmissionError,
    GameError,
    validate_team,
)


@pytest.fixture
def service(tmp_path) -> GameService:
    set_db_path(tmp_path / "game.db")
    init_db()
    return GameService(rng=np.random.default_rng(2024))


def _half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _expected_post_fund(team_row, yields) -> int:
    allocs = {s: team_row[s] for s in STARTUPS}
    returned = sum(_half_up(a * (1 + yields[s])) for s, a in allocs.items())
    return returned + (team_row["pre_fund"] - sum(allocs.values()))


def _submit_everyone(service: GameService, round_id: str) -> None:
    for i, team in enumerate(team_ids()):
        service.submit_portfolio(round_id, team, {"s1": 100 + i, "s2": 50, "s3": i * 10, "s4": 0, "s5": 25})


def test_validate_team_bounds():
    assert validate_team("team1") == "team1"
    assert validate_team(f"team{GAME_CONFIG['team_count']}")
    for bad in ("team0", "team01", "team99", "teamX", "", None, "admin"):
        with pytest.raises(InvalidTeamError):
            validate_team(bad)


def test_invalid_round_is_rejected(service):
    with pytest.raises(InvalidRoundError):
        service.list_teams("r5")
    with pytest.raises(InvalidRoundError):
        service.open_round("round1")


def test_submit_requires_open_round(service):
    with pytest.raises(RoundStateError):
        service.submit_portfolio("r1", "team1", {"s1": 10, "s2": 0, "s3": 0, "s4": 0})


def test_submit_rejects_allocation_over_fund(service):
    service.open_round("r1")
    with pytest.raises(SubmissionError):
        service.submit_portfolio("r1", "team1", {"s1": 600, "s2": 401, "s3": 0, "s4": 0})
    team = service.get_team("r1", "team1")
    assert team.submitted is False and team.invested == 0


def test_submit_stores_allocations_and_marks_submitted(service):
    service.open_round("r1")
    team = service.submit_portfolio("r1", "team3", {"s1": 100, "s2": 200, "s3": 300, "s4": 400})
    assert team.submitted is True
    assert team.allocations() == {"s1": 100, "s2": 200, "s3": 300, "s4": 400, "s5": 0}


def test_unknown_team_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_team("r1", "team99")


def test_settlement_rejects_zero_submissions(service):
    service.open_round("r1")
    with pytest.raises(SubmissionError):
        service.settle_round("r1")


def test_settlement_formula_matches_stored_yields(service):
    service.open_round("r1")
    service.submit_portfolio("r1", "team1", {"s1": 300, "s2": 200, "s3": 0, "s4": 100, "s5": 50})
    service.submit_portfolio("r1", "team2", {"s1": 0, "s2": 333, "s3": 333, "s4": 333})
    db.update_team("r1", "team5", s1=999)  # draft, never submitted

    result = service.settle_round("r1")

    startups = {s["startup"]: s for s in db.get_startups("r1")}
    yields = {s: startups[s]["yield"] for s in STARTUPS}
    for s in STARTUPS:
        y = yields[s]
        assert GAME_CONFIG["yield_min"] <= y <= GAME_CONFIG["yield_max"]
        assert round(y, 4) == y

    assert startups["s1"]["pre_cap"] == 300
    assert startups["s2"]["pre_cap"] == 533
    assert startups["s5"]["pre_cap"] == 50
    for s in STARTUPS:
        assert startups[s]["post_cap"] == _half_up(startups[s]["pre_cap"] * (1 + yields[s]))

    for row in db.get_teams_for_round("r1"):
        if row["submitted"]:
            assert row["post_fund"] == _expected_post_fund(row, yields)
        else:
            assert row["post_fund"] == row["pre_fund"]
    assert result["post_funds"]["team5"] == GAME_CONFIG["initial_fund"]


def test_close_round_requires_all_submitted(service):
    service.open_round("r1")
    service.submit_portfolio("r1", "team1", {"s1": 10, "s2": 0, "s3": 0, "s4": 0})
    with pytest.raises(SubmissionError):
        service.close_round("r1")
    # the failed close leaves the round open and unsettled
    assert service.get_round_status("r1") == "open"
    assert all(s.yield_ is None for s in service.list_startups("r1"))


def test_close_round_requires_open_status(service):
    with pytest.raises(RoundStateError):
        service.close_round("r1")


def test_close_round_settles_once(service):
    service.open_round("r1")
    _submit_everyone(service, "r1")
    service.close_round("r1")
    assert service.get_round_status("r1") == "closed"
    funds = {t.team: t.post_fund for t in service.list_teams("r1")}
    assert all(v is not None for v in funds.values())

    with pytest.raises(RoundStateError):
        service.close_round("r1")
    assert {t.team: t.post_fund for t in service.list_teams("r1")} == funds


def test_open_next_round_carries_post_fund(service):
    service.open_round("r1")
    with pytest.raises(RoundStateError):
        service.open_round("r2")
    _submit_everyone(service, "r1")
    service.close_round("r1")

    with pytest.raises(RoundStateError):
        service.open_round("r3")
    service.open_round("r2")

    r1 = {t.team: t for t in service.list_teams("r1")}
    for t in service.list_teams("r2"):
        assert t.pre_fund == r1[t.team].post_fund
        assert t.post_fund is None and t.submitted is False and t.invested == 0

    with pytest.raises(RoundStateError):
        service.open_round("r1")
    assert [s.status for s in service.get_round_states()] == ["closed", "open", "locked", "locked"]


def test_toggle_and_mark_all_submitted(service):
    previous, updated = service.toggle_submission("r1", "team2")
    assert previous is False and updated.submitted is True
    assert service.have_all_teams_submitted("r1") is False
    service.mark_all_submitted("r1")
    assert service.have_all_teams_submitted("r1") is True


def test_admin_update_team_validates_fields(service):
    updated = service.admin_update_team("r1", "team1", {"s1": 5, "pre_fund": 900})
    assert updated.s1 == 5 and updated.pre_fund == 900
    with pytest.raises(GameError):
        service.admin_update_team("r1", "team1", {})
    with pytest.raises(ValueError):
        service.admin_update_team("r1", "team1", {"s1": -5})


def test_reset_rounds_and_teams(service):
    service.open_round("r1")
    service.submit_portfolio("r1", "team1", {"s1": 10, "s2": 0, "s3": 0, "s4": 0})
    service.reset_rounds()
    service.reset_teams()
    assert all(s.status == "locked" for s in service.get_round_states())
    assert service.get_team("r1", "team1").submitted is False


def test_cumulative_rankings(service):
    db.update_team("r1", "team1", s1=100, post_fund=1100)
    db.update_team("r2", "team1", s1=50, s3=20, post_fund=1200)
    db.update_team("r2", "team2", s2=10, post_fund=1500)

    ranked = service.cumulative_rankings("r2")
    assert ranked[0]["team"] == "team2" and ranked[0]["rank"] == 1
    team1 = next(e for e in ranked if e["team"] == "team1")
    assert team1["s1"] == 150 and team1["s3"] == 20 and team1["total"] == 170
    assert team1["post_fund"] == 1200 and team1["rank"] == 2

    only_r1 = next(e for e in service.cumulative_rankings("r1") if e["team"] == "team1")
    assert only_r1["s1"] == 100 and only_r1["post_fund"] == 1100


def test_final_results_rank_settled_teams(service):
    db.update_team("r4", "team3", post_fund=800)
    db.update_team("r4", "team7", post_fund=1800)
    assert service.final_results() == [
        {"team": "team7", "post_fund": 1800, "rank": 1},
        {"team": "team3", "post_fund": 800, "rank": 2},
    ]


def test_team_startup_matching_respects_capacity(service):
    db.update_team("r4", "team1", s1=500, post_fund=2000)
    db.update_team("r4", "team2", s1=500, s2=10, post_fund=1900)
    db.update_team("r4", "team3", s1=400, post_fund=1800)
    db.update_team("r4", "team4", s1=300, s2=100, post_fund=1700)
    db.update_team("r4", "team5", post_fund=1600)

    result = service.team_startup_matching("r4")
    matched = {m["team"]: m["startup"] for m in result["matches"]}
    assert matched["team1"] == matched["team2"] == matched["team3"] == "s1"
    assert matched["team4"] == "s2"
    # no investment at all: first startup with capacity left
    assert matched["team5"] == "s2"
    assert result["total_matches"] == 5
    assert sorted(service.get_final_matching(), key=lambda m: m["team"]) == sorted(
        result["matches"], key=lambda m: m["team"]
    )


def test_team_startup_matching_only_for_final_round(service):
    with pytest.raises(GameError):
        service.team_startup_matching("r1")


def test_investment_data_for_startup(service):
    db.update_team("r1", "team2", s3=70)
    data = service.investment_data("r1", "s3")
    assert data[1] == {"team": "team2", "team_number": 2, "investment": 70}
    with pytest.raises(GameError):
        service.investment_data("r1", "s9")


def test_admin_update_keeps_submitted_rows_within_fund(service):
    with pytest.raises(SubmissionError):
        service.admin_update_team("r1", "team1", {"s1": 5000, "submitted": True})
    row = service.get_team("r1", "team1")
    assert row.s1 == 0 and row.submitted is False

    # lowering the fund under an existing submission is rejected too
    service.open_round("r1")
    service.submit_portfolio("r1", "team2", {"s1": 600, "s2": 0, "s3": 0, "s4": 0})
    with pytest.raises(SubmissionError):
        service.admin_update_team("r1", "team2", {"pre_fund": 500})
    assert service.get_team("r1", "team2").pre_fund == GAME_CONFIG["initial_fund"]

    # drafts may exceed the fund until they are flagged as submitted
    service.admin_update_team("r1", "team3", {"s1": 5000})
    with pytest.raises(SubmissionError):
        service.toggle_submission("r1", "team3")
    with pytest.raises(SubmissionError):
        service.mark_all_submitted("r1")
    assert service.get_team("r1", "team3").submitted is False


def test_team_cumulative_sums_up_to_current_round(service):
    db.update_team("r1", "team4", s2=100, s4=10)
    db.update_team("r2", "team4", s2=40, pre_fund=1080)
    db.update_team("r3", "team4", s3=500)

    data = service.team_cumulative("team4", "r2")
    assert data == {
        "team": "team4", "currentRound": "r2",
        "s1": 0, "s2": 140, "s3": 0, "s4": 10, "s5": 0,
        "total": 150, "preFund": 1080,
    }
    assert service.team_cumulative("team4", "r3")["total"] == 650
    with pytest.raises(InvalidTeamError):
        service.team_cumulative("team04", "r1")
    with pytest.raises(InvalidRoundError):
        service.team_cumulative("team4", None)
