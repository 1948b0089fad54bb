import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from clipvote.dependencies import (
    get_admin_service,
    get_channel_settings,
    get_coordinator,
    get_identity,
)
from clipvote.errors import VoteError
from clipvote.middleware.validation import (
    error_response,
    validate_channel,
    validate_voter,
    vote_error_response,
)
from clipvote.models.voter import UndoResponse, VoterProfileResponse
from clipvote.services.admin_service import DEFAULT_LIST_LIMIT, AdminService
from clipvote.services.channel_settings import ChannelSettingsService
from clipvote.services.identity import IdentityProvider
from clipvote.services.vote_service import VoteCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

AdminKey = Annotated[str | None, Header(alias="X-Admin-Key")]


class ClipResetRequest(BaseModel):
    channel: str
    clip: str | int


class VotingSwitchRequest(BaseModel):
    enabled: bool


@router.get("/voters/flagged")
async def list_flagged(
    admin: Annotated[AdminService, Depends(get_admin_service)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
        voters = await admin.list_flagged()
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to list flagged voters")
        return error_response(500, "INTERNAL_ERROR", "Failed to list flagged voters")

    return {
        "success": True,
        "voters": [VoterProfileResponse.from_profile(v).model_dump(mode="json") for v in voters],
    }


@router.get("/voters")
async def list_all(
    admin: Annotated[AdminService, Depends(get_admin_service)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    limit: Annotated[int, Query()] = DEFAULT_LIST_LIMIT,
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
        voters = await admin.list_all(limit)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to list voters")
        return error_response(500, "INTERNAL_ERROR", "Failed to list voters")

    return {
        "success": True,
        "voters": [VoterProfileResponse.from_profile(v).model_dump(mode="json") for v in voters],
    }


@router.post("/voters/{voter}/undo")
async def undo_votes(
    voter: str,
    admin: Annotated[AdminService, Depends(get_admin_service)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
    except VoteError as e:
        return vote_error_response(e)

    voter, err = validate_voter(voter)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        result = await admin.undo_votes(voter)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to undo votes")
        return error_response(500, "INTERNAL_ERROR", "Failed to undo votes")

    resp = UndoResponse(
        message=f"Removed {result.votes_removed} votes from {voter}",
        votes_removed=result.votes_removed,
    )
    return resp.model_dump()


@router.post("/voters/{voter}/clear-flag")
async def clear_flag(
    voter: str,
    admin: Annotated[AdminService, Depends(get_admin_service)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
    except VoteError as e:
        return vote_error_response(e)

    voter, err = validate_voter(voter)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        await admin.clear_flag(voter)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to clear flag")
        return error_response(500, "INTERNAL_ERROR", "Failed to clear flag")

    return {"success": True, "message": f"Cleared flag for {voter}"}


@router.get("/stats")
async def get_stats(
    admin: Annotated[AdminService, Depends(get_admin_service)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
        stats = await admin.get_stats()
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to fetch statistics")
        return error_response(500, "INTERNAL_ERROR", "Failed to fetch statistics")

    return {"success": True, "stats": stats.model_dump()}


@router.post("/clips/reset")
async def reset_clip(
    request: Request,
    admin: Annotated[AdminService, Depends(get_admin_service)],
    coordinator: Annotated[VoteCoordinator, Depends(get_coordinator)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
    except VoteError as e:
        return vote_error_response(e)

    try:
        req = ClipResetRequest.model_validate(await request.json())
    except Exception:
        return error_response(400, "INVALID_BODY", "Invalid request body")

    channel, err = validate_channel(req.channel)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        clip = await coordinator.resolve(channel, req.clip)
        removed = await admin.reset_clip_votes(clip)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to reset clip votes")
        return error_response(500, "INTERNAL_ERROR", "Failed to reset clip votes")

    return {"success": True, "clip_id": clip.clip_id, "votes_removed": removed}


@router.put("/channels/{channel}/voting")
async def set_voting(
    channel: str,
    request: Request,
    channel_settings: Annotated[ChannelSettingsService, Depends(get_channel_settings)],
    identity: Annotated[IdentityProvider, Depends(get_identity)],
    x_admin_key: AdminKey = None,
):
    try:
        identity.require_admin(x_admin_key)
    except VoteError as e:
        return vote_error_response(e)

    channel, err = validate_channel(channel)
    if err:
        return error_response(400, "INVALID_FIELD", err)

    try:
        req = VotingSwitchRequest.model_validate(await request.json())
    except Exception:
        return error_response(400, "INVALID_BODY", "Invalid request body")

    try:
        await channel_settings.set_voting_enabled(channel, req.enabled)
    except VoteError as e:
        return vote_error_response(e)
    except Exception:
        logger.exception("Failed to update voting status")
        return error_response(500, "INTERNAL_ERROR", "Failed to update voting status")

    return {"success": True, "channel": channel, "voting_enabled": req.enabled}
