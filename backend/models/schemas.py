from __future__ import annotations

from typing import Optional, Dict, Any, Literal
from pydantic import BaseModel, Field


RoundId = Literal["r1", "r2", "r3", "r4"]


class TeamRound(BaseModel):
    team: str
    s1: int = 0
    s2: int = 0
    s3: int = 0
    s4: int = 0
    s5: int = 0
    pre_fund: Optional[int] = None
    post_fund: Optional[int] = None
    submitted: bool = False

    @classmethod
    def from_row(cls, row) -> "TeamRound":
        return cls(
            team=row["team"],
            s1=row["s1"],
            s2=row["s2"],
            s3=row["s3"],
            s4=row["s4"],
            s5=row["s5"],
            pre_fund=row["pre_fund"],
            post_fund=row["post_fund"],
            submitted=bool(row["submitted"]),
        )

    def allocations(self) -> Dict[str, int]:
        return {"s1": self.s1, "s2": self.s2, "s3": self.s3, "s4": self.s4, "s5": self.s5}

    @property
    def invested(self) -> int:
        return sum(self.allocations().values())


class StartupRound(BaseModel):
    startup: str
    pre_cap: Optional[int] = None
    yield_: Optional[float] = Field(default=None, alias="yield")
    post_cap: Optional[int] = None

    model_config = {"populate_by_name": True}

    @classmethod
    def from_row(cls, row) -> "StartupRound":
        return cls(
            startup=row["startup"],
            pre_cap=row["pre_cap"],
            yield_=row["yield"],
            post_cap=row["post_cap"],
        )

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RoundState(BaseModel):
    round: str
    status: Literal["locked", "open", "closed"]
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "RoundState":
        return cls(round=row["round"], status=row["status"], updated_at=row["updated_at"])


# --- Request bodies ---

class Allocation(BaseModel):
    s1: int = Field(ge=0)
    s2: int = Field(ge=0)
    s3: int = Field(ge=0)
    s4: int = Field(ge=0)
    s5: int = Field(default=0, ge=0)


class RoundRequest(BaseModel):
    round: RoundId


class TeamUpdateData(BaseModel):
    s1: Optional[int] = Field(default=None, ge=0)
    s2: Optional[int] = Field(default=None, ge=0)
    s3: Optional[int] = Field(default=None, ge=0)
    s4: Optional[int] = Field(default=None, ge=0)
    s5: Optional[int] = Field(default=None, ge=0)
    pre_fund: Optional[int] = Field(default=None, ge=0)
    post_fund: Optional[int] = None
    submitted: Optional[bool] = None


class AdminTeamAction(BaseModel):
    action: str
    team: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
