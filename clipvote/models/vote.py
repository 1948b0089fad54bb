from datetime import datetime
from typing import Literal

from pydantic import BaseModel

Direction = Literal["up", "down"]
VoteType = Literal["like", "dislike", "clear"]
Action = Literal["recorded", "changed", "unchanged", "cleared"]

VOTE_TYPES = frozenset(["like", "dislike", "clear"])
DIRECTION_FOR_VOTE: dict[str, Direction] = {"like": "up", "dislike": "down"}
VOTE_FOR_DIRECTION: dict[str, str] = {"up": "like", "down": "dislike"}


class VoteLedgerEntry(BaseModel):
    """A voter's single current vote on a clip."""

    channel: str
    clip_id: str
    voter: str
    direction: Direction
    voted_at: datetime


class AggregateCount(BaseModel):
    """Denormalised per-clip totals derived from the ledger."""

    channel: str
    clip_id: str
    up_votes: int = 0
    down_votes: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


class VoteRequest(BaseModel):
    """API request body for submitting a vote."""

    channel: str
    clip: str | int
    vote: str
    voter: str | None = None


class VoteResponse(BaseModel):
    """API response after submitting a vote."""

    success: bool = True
    action: Action
    likes: int
    dislikes: int
    user_vote: str | None = None


class ClipVoteSummary(BaseModel):
    """Counts for one clip plus the caller's own vote, if known."""

    likes: int = 0
    dislikes: int = 0
    user_vote: str | None = None


class VoteQueryResponse(BaseModel):
    """API response for a multi-clip vote lookup."""

    votes: dict[str, ClipVoteSummary]
    logged_in: bool
    username: str | None = None


class ClipTally(BaseModel):
    """One voted clip's totals, as exported for downstream weighting."""

    clip_id: str
    seq: int | None = None
    title: str | None = None
    up_votes: int = 0
    down_votes: int = 0
    net_score: int = 0
    first_vote_at: datetime | None = None
    last_vote_at: datetime | None = None


class VoteExportResponse(BaseModel):
    """API response for a channel's full vote export."""

    channel: str
    exported_at: datetime
    total_clips_voted: int
    votes: list[ClipTally]
