from datetime import datetime

from pydantic import BaseModel


class VoterProfile(BaseModel):
    """Heuristic tracking row for a single voter."""

    voter: str
    total_votes: int = 0
    votes_last_hour: int = 0
    votes_last_day: int = 0
    downvote_ratio: float = 0.0
    first_vote_at: datetime | None = None
    last_vote_at: datetime | None = None
    flagged: bool = False
    flag_reason: str | None = None
    flagged_at: datetime | None = None
    reviewed: bool = False
    reviewed_at: datetime | None = None

    @property
    def suspended(self) -> bool:
        return self.flagged and not self.reviewed


class RateLimitWindow(BaseModel):
    """Fixed rate-limit window state for one voter."""

    voter: str
    vote_count: int
    window_start: datetime


class VoterProfileResponse(BaseModel):
    """API representation of a tracked voter."""

    username: str
    total_votes: int
    votes_last_hour: int
    votes_last_day: int
    downvote_ratio: float
    first_vote_at: datetime | None = None
    last_vote_at: datetime | None = None
    flagged: bool
    reviewed: bool
    flag_reason: str | None = None
    flagged_at: datetime | None = None

    @classmethod
    def from_profile(cls, profile: VoterProfile) -> "VoterProfileResponse":
        return cls(
            username=profile.voter,
            total_votes=profile.total_votes,
            votes_last_hour=profile.votes_last_hour,
            votes_last_day=profile.votes_last_day,
            downvote_ratio=round(profile.downvote_ratio, 4),
            first_vote_at=profile.first_vote_at,
            last_vote_at=profile.last_vote_at,
            flagged=profile.flagged,
            reviewed=profile.reviewed,
            flag_reason=profile.flag_reason,
            flagged_at=profile.flagged_at,
        )


class AdminStats(BaseModel):
    """Observability counters for the admin dashboard."""

    flagged_count: int
    total_tracked: int
    total_voters: int
    votes_24h: int


class UndoResponse(BaseModel):
    """API response after undoing a voter's votes."""

    success: bool = True
    message: str
    votes_removed: int
