"""Endpoints describing the signed-in account."""

from fastapi import APIRouter, Depends, Response

from .. import models, schemas
from ..auth import SessionClaims, get_current_principal, get_current_user
from ..rate_limit import rate_limited

router = APIRouter(prefix="/account", tags=["account"])


@router.get(
    "/me",
    response_model=schemas.SessionInfo,
    response_model_by_alias=True,
    dependencies=[Depends(rate_limited("api"))],
)
def read_me(
    response: Response,
    claims: SessionClaims = Depends(get_current_principal),
    user: models.User = Depends(get_current_user),
) -> schemas.SessionInfo:
    """Return the caller's account along with how and until when they are signed in."""

    response.headers["Cache-Control"] = "no-store"

    return schemas.SessionInfo(
        user=schemas.PrincipalRead.from_user(user),
        method=claims.method,
        expires_at=claims.expires_at,
    )
