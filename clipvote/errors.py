"""Domain errors raised by the vote ledger and admin services.

Each error carries the HTTP status and the machine-readable code the
routers render into ``{"error": {"code", "message"}}``.
"""


class VoteError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidInput(VoteError):
    status_code = 400
    code = "INVALID_FIELD"


class InvalidVoteType(InvalidInput):
    code = "INVALID_VOTE"

    def __init__(self, message: str = "Invalid vote type. Use: like, dislike, or clear"):
        super().__init__(message)


class Unauthorized(VoteError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(VoteError):
    status_code = 403
    code = "FORBIDDEN"


class Suspended(Forbidden):
    code = "VOTING_SUSPENDED"

    def __init__(self, message: str = "Your voting privileges have been temporarily suspended for review."):
        super().__init__(message)


class VotingDisabled(Forbidden):
    code = "VOTING_DISABLED"

    def __init__(self, channel: str):
        super().__init__(f"Voting is disabled for {channel}")
        self.channel = channel


class NotFound(VoteError):
    status_code = 404
    code = "NOT_FOUND"


class ClipNotFound(NotFound):
    def __init__(self, channel: str, clip_ref: str):
        super().__init__(f"Clip {clip_ref} not found for {channel}")
        self.channel = channel
        self.clip_ref = clip_ref


class VoterNotFound(NotFound):
    def __init__(self, voter: str):
        super().__init__(f"Voter {voter} is not tracked")
        self.voter = voter


class RateLimited(VoteError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int, headers: dict[str, str] | None = None):
        super().__init__(f"Too many votes. Please wait {retry_after} seconds.")
        self.retry_after = retry_after
        self.headers = headers or {}


class StorageError(VoteError):
    """Transient infrastructure failure; the caller may retry."""

    status_code = 503
    code = "STORAGE_ERROR"


class UndoIncomplete(VoteError):
    """Raised when undo_votes stops part-way. Safe to retry."""

    code = "UNDO_INCOMPLETE"

    def __init__(self, voter: str, votes_removed: int):
        super().__init__(
            f"Undo for {voter} stopped after removing {votes_removed} votes; retry to finish"
        )
        self.voter = voter
        self.votes_removed = votes_removed
