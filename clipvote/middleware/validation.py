"""Input validation utilities matching database schema constraints."""

import re

from fastapi.responses import JSONResponse

from clipvote.errors import InvalidInput, VoteError

# Field length limits matching database schema constraints.
MAX_CHANNEL_LEN = 64  # clips.login VARCHAR(64)
MAX_VOTER_LEN = 64  # vote_ledger.username VARCHAR(64)
MAX_CLIP_ID_LEN = 255  # clips.clip_id VARCHAR(255)
MAX_CLIP_REFS = 100
MAX_SEQ = 2_147_483_647  # clips.seq INTEGER
MAX_SEQ_DIGITS = len(str(MAX_SEQ))

# Compiled regex patterns.
HANDLE_RE = re.compile(r"^[a-z0-9_]+$")
CLIP_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
SEQ_RE = re.compile(r"^#?[0-9]+$")


def error_response(
    status_code: int, code: str, message: str, headers: dict[str, str] | None = None, **extra
) -> JSONResponse:
    """Return a standard API error response."""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, **extra}},
        headers=headers,
    )


def vote_error_response(err: VoteError) -> JSONResponse:
    """Render a domain error with its status and any extra fields it carries."""
    extra = {}
    headers = None
    retry_after = getattr(err, "retry_after", None)
    if retry_after is not None:
        extra["retryAfter"] = retry_after
        headers = {**getattr(err, "headers", {}), "Retry-After": str(retry_after)}
    votes_removed = getattr(err, "votes_removed", None)
    if votes_removed is not None:
        extra["votesRemoved"] = votes_removed
    return error_response(err.status_code, err.code, err.message, headers, **extra)


def _validate_handle(value: str, field: str) -> tuple[str, str | None]:
    value = value.strip().lower() if value else ""
    if not value:
        return "", f"{field} is required"
    if len(value) > MAX_VOTER_LEN:
        return "", f"{field} must be at most 64 characters"
    if not HANDLE_RE.match(value):
        return "", f"{field} contains invalid characters"
    return value, None


def validate_channel(channel: str) -> tuple[str, str | None]:
    """Validate a channel login. Returns (cleaned_login, error_message)."""
    return _validate_handle(channel, "channel")


def validate_voter(voter: str) -> tuple[str, str | None]:
    """Validate a voter handle. Returns (cleaned_handle, error_message)."""
    return _validate_handle(voter, "voter")


def parse_clip_ref(ref: str | int) -> int | str:
    """Turn a clip reference into a seq number or a clip_id.

    Integers and digit strings (optionally prefixed with ``#``) are seq
    numbers and must fit the INTEGER seq column; anything else must be a
    well-formed clip_id.
    """
    if isinstance(ref, bool):
        raise InvalidInput("Invalid clip reference")
    if isinstance(ref, int):
        seq = ref
    else:
        ref = ref.strip() if ref else ""
        if not ref:
            raise InvalidInput("clip is required")
        if not SEQ_RE.match(ref):
            if len(ref) > MAX_CLIP_ID_LEN or not CLIP_ID_RE.match(ref):
                raise InvalidInput("clip contains invalid characters")
            return ref
        digits = ref.lstrip("#")
        if len(digits) > MAX_SEQ_DIGITS:
            raise InvalidInput("Invalid clip number")
        seq = int(digits)
    if seq <= 0 or seq > MAX_SEQ:
        raise InvalidInput("Invalid clip number")
    return seq


def split_clip_refs(raw: str) -> list[str]:
    """Split a comma-separated clip list, dropping blanks and duplicates."""
    refs: list[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part and part not in refs:
            refs.append(part)
    if not refs:
        raise InvalidInput("No valid clip numbers")
    if len(refs) > MAX_CLIP_REFS:
        raise InvalidInput(f"At most {MAX_CLIP_REFS} clips per request")
    return refs
