import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from clipvote.dependencies import get_coordinator, get_identity
from clipvote.errors import Unauthorized, VoteError
from clipvote.middleware.validation import (
    error_response,
    split_clip_refs,
    validate_channel,
    vote_error_response,
)
from clipvote.models.vote import (
    VoteExportResponse,
    VoteQueryResponse,
    VoteRequest,
    VoteResponse,
)
from clipvote.services.identity import IdentityProvider
from clipvote.services.vote_service import VoteCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/votes", tags=["votes"])


@router.post("")
async def submit(
    request: Request,
    coordinator: Annotated[VoteCoordinator, Depends(get_coordinator)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_voter: Annotated[str | None, Header()] = None,
    x_voter_token: Annotated[str | None, Header()] = None,
    x_bot_key: Annotated[str | None, Header()] = None,
):
    try:
        body = await request.json()
    except Exception:
        return error_response(400, "INVALID_BODY", "Invalid request body")

    try:
        req = VoteRequest.model_validate(body)
    except Exception:
        return error_response(400, "INVALID_BODY", "Invalid request body")

    channel, err = validate_channel(req.channel)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        if x_bot_key is not None:
            voter = identity.bot_voter(x_bot_key, req.voter)
        else:
            voter = identity.web_voter(x_voter, x_voter_token)
            if voter is None:
                raise Unauthorized("Not authenticated")

        result = await coordinator.submit_vote(channel, req.clip, voter, req.vote)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to submit vote")
        return error_response(500, "INTERNAL_ERROR", "Failed to submit vote")

    resp = VoteResponse(
        action=result.action,
        likes=result.likes,
        dislikes=result.dislikes,
        user_vote=result.user_vote,
    )
    headers = result.rate.headers() if result.rate is not None else None
    return JSONResponse(content=resp.model_dump(), headers=headers)


@router.get("")
async def query(
    coordinator: Annotated[VoteCoordinator, Depends(get_coordinator)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    channel: Annotated[str, Query()] = "",
    clips: Annotated[str, Query()] = "",
    x_voter: Annotated[str | None, Header()] = None,
    x_voter_token: Annotated[str | None, Header()] = None,
):
    channel, err = validate_channel(channel)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        refs = split_clip_refs(clips)
        voter = identity.web_voter(x_voter, x_voter_token)
        result = await coordinator.query_votes(channel, refs, voter)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to query votes")
        return error_response(500, "INTERNAL_ERROR", "Failed to query votes")

    resp = VoteQueryResponse(votes=result.votes, logged_in=result.logged_in, username=result.username)
    return resp.model_dump()


@router.get("/export")
async def export(
    coordinator: Annotated[VoteCoordinator, Depends(get_coordinator)],
    channel: Annotated[str, Query()] = "",
):
    channel, err = validate_channel(channel)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        result = await coordinator.export_votes(channel)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to export votes")
        return error_response(500, "INTERNAL_ERROR", "Failed to export votes")

    resp = VoteExportResponse(
        channel=result.channel,
        exported_at=result.exported_at,
        total_clips_voted=len(result.votes),
        votes=result.votes,
    )
    return JSONResponse(content=resp.model_dump(mode="json"), headers={"Cache-Control": "no-store"})
