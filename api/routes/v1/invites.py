"""
api/routes/v1/invites.py -- Team invitation REST endpoints.

Routes:
  POST   /api/v1/invites                  -- invite an email (business tier and up)
  GET    /api/v1/invites/can-invite       -- may the caller invite right now
  GET    /api/v1/invites/team             -- list the caller's team invites (paged)
  POST   /api/v1/invites/sweep            -- expire lapsed pending invites (admin)
  POST   /api/v1/invites/{id}/resend      -- resend (inviter or team owner)
  DELETE /api/v1/invites/{id}             -- cancel (inviter or team owner)
  GET    /api/v1/invites/token/{token}    -- public: look up an invite by its link
  POST   /api/v1/invites/accept/{token}   -- public: accept, creating an account if needed
  POST   /api/v1/invites/decline/{token}  -- public: decline

Thin adapters over InviteManager (app.state.invites). The invite token is the
invitee's credential for the public routes, so it is never echoed back in a
response body.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AcceptInviteRequest,
    AcceptInviteResponse,
    CanInviteResponse,
    InviteActionResponse,
    InviteCreate,
    InviteListResponse,
    InviteResponse,
    SweepResponse,
    TeamSummary,
    UserResponse,
)
from auth.dependencies import get_current_user, require_admin, require_tier
from auth.models import User
from auth.roles import Role
from teams.invites import InviteManager, team_id_for

# Auth policy:
# - token/{token}, accept/{token}, decline/{token}: public -- the token is the credential
# - POST /invites: requires business tier or above (require_tier)
# - sweep: requires admin (require_admin)
# - everything else: requires auth (get_current_user); ownership checked in InviteManager
router = APIRouter()


def _invites(request: Request) -> InviteManager:
    return request.app.state.invites


# ---------------------------------------------------------------------------
# Team side (authenticated)
# ---------------------------------------------------------------------------


@router.post("/invites", response_model=InviteActionResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    current_user: User = Depends(require_tier(Role.business.value)),
) -> InviteActionResponse:
    team_id = body.team_id if body.team_id is not None else team_id_for(current_user)
    result = _invites(request).create(
        body.email,
        invited_by=current_user.id,
        team_id=team_id,
        role=body.role,
        message=body.message,
    )
    return InviteActionResponse(
        message="Invitation sent successfully",
        invite=InviteResponse.from_invite(result.invite),
        warnings=result.warnings,
    )


@router.get("/invites/can-invite", response_model=CanInviteResponse)
def can_invite(request: Request, current_user: User = Depends(get_current_user)) -> CanInviteResponse:
    return CanInviteResponse.from_eligibility(_invites(request).can_invite(current_user))


@router.get("/invites/team", response_model=InviteListResponse)
def list_team_invites(
    request: Request,
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_user),
) -> InviteListResponse:
    page = _invites(request).list_for_team(team_id_for(current_user), status=status, limit=limit, skip=skip)
    return InviteListResponse(
        invites=[InviteResponse.from_invite(i) for i in page.invites],
        total=page.total,
        limit=limit,
        skip=skip,
    )


@router.post("/invites/sweep", response_model=SweepResponse)
def sweep_expired(request: Request, _admin: User = Depends(require_admin)) -> SweepResponse:
    """Expire every pending invite past its deadline.

    main.py sweep-invites does the same from a scheduler; this route lets an
    admin trigger it on demand.
    """
    return SweepResponse(expired=_invites(request).sweep_expired())


@router.post("/invites/{invite_id}/resend", response_model=InviteActionResponse)
def resend_invite(
    request: Request,
    invite_id: int,
    current_user: User = Depends(get_current_user),
) -> InviteActionResponse:
    result = _invites(request).resend(invite_id, current_user.id)
    return InviteActionResponse(
        message="Invitation resent successfully",
        invite=InviteResponse.from_invite(result.invite),
        warnings=result.warnings,
    )


@router.delete("/invites/{invite_id}", response_model=InviteActionResponse)
def cancel_invite(
    request: Request,
    invite_id: int,
    current_user: User = Depends(get_current_user),
) -> InviteActionResponse:
    invite = _invites(request).cancel(invite_id, current_user.id)
    return InviteActionResponse(message="Invitation cancelled", invite=InviteResponse.from_invite(invite))


# ---------------------------------------------------------------------------
# Invitee side (public)
# ---------------------------------------------------------------------------


@router.get("/invites/token/{token}", response_model=InviteResponse)
def get_invite(request: Request, token: str) -> InviteResponse:
    return InviteResponse.from_invite(_invites(request).get_by_token(token))


@router.post("/invites/accept/{token}", response_model=AcceptInviteResponse)
def accept_invite(
    request: Request,
    token: str,
    body: Optional[AcceptInviteRequest] = None,
) -> AcceptInviteResponse:
    user_data = body.model_dump(exclude_none=True) if body is not None else {}
    result = _invites(request).accept(token, user_data)
    return AcceptInviteResponse(
        message="Invitation accepted successfully",
        user=UserResponse.from_user(result.user),
        team=TeamSummary.from_user(result.team),
        is_new_user=result.is_new_user,
        warnings=result.warnings,
    )


@router.post("/invites/decline/{token}", response_model=InviteActionResponse)
def decline_invite(request: Request, token: str) -> InviteActionResponse:
    result = _invites(request).decline(token)
    return InviteActionResponse(
        message="Invitation declined",
        invite=InviteResponse.from_invite(result.invite),
        warnings=result.warnings,
    )
