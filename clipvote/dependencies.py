from fastapi import Request

from clipvote.services.admin_service import AdminService
from clipvote.services.channel_settings import ChannelSettingsService
from clipvote.services.identity import IdentityProvider
from clipvote.services.vote_service import VoteCoordinator


def get_coordinator(request: Request) -> VoteCoordinator:
    return request.app.state.coordinator


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.admin_service


def get_channel_settings(request: Request) -> ChannelSettingsService:
    return request.app.state.channel_settings


def get_identity(request: Request) -> IdentityProvider:
    return request.app.state.identity
