"""
Login, logout and current-employee endpoints
"""

from fastapi import APIRouter, Depends

from .auth import TellerSystem, get_bearer_token, get_request_context, get_system
from .schemas import IdentityModel, LoginRequest, LoginResponse
from ..identity import RequestContext
from ..permissions import allowed_operations


router = APIRouter()


def _allowed(identity):
    return [op.value for op in allowed_operations(identity.role, identity.permissions)]


@router.post("/login", response_model=LoginResponse)
def login(request: LoginRequest, system: TellerSystem = Depends(get_system)):
    """Exchange email and password for a bearer token"""
    result = system.sessions.login(request.email, request.password)
    return LoginResponse(
        access_token=result.token,
        expires_at=result.expires_at.isoformat(),
        employee=IdentityModel.from_identity(result.identity, _allowed(result.identity))
    )


@router.post("/logout")
def logout(token: str = Depends(get_bearer_token), system: TellerSystem = Depends(get_system)):
    return {"logged_out": system.sessions.logout(token)}


@router.get("/me", response_model=IdentityModel)
def me(ctx: RequestContext = Depends(get_request_context)):
    """Identity behind the current token, with the operations it may perform"""
    return IdentityModel.from_identity(ctx.identity, _allowed(ctx.identity))
