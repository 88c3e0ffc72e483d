from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from access_core.schemas.auth import LoginIn, MeOut, PasswordChangeIn, PasswordChangeOut, TokenOut
from access_core.security.auth import authenticate
from access_core.security.dependencies import get_access, get_current_user_id, get_session_token
from access_core.services.access import AccessControl

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenOut)
def login(body: LoginIn, access: AccessControl = Depends(get_access)) -> TokenOut:
    user_id = authenticate(access, body.email, body.password)
    issued = access.sessions.issue_session(user_id)
    return TokenOut(access_token=issued.token, expires_at=issued.expires_at)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    access: AccessControl = Depends(get_access),
    user_id: int = Depends(get_current_user_id),
    token: str = Depends(get_session_token),
) -> Response:
    access.sessions.revoke_session(token, actor_user_id=user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=MeOut)
def me(access: AccessControl = Depends(get_access), user_id: int = Depends(get_current_user_id)) -> MeOut:
    # Internal read: a user may always see their own record.
    user = access.resource("users").read(user_id, None)
    subject = access.resolver.subject(user_id)
    return MeOut(
        id=user["id"],
        name=user["name"],
        email=user["email"],
        status=user["status"],
        department_id=user["department_id"],
        region=user["region"],
        level=user["level"],
        roles=sorted(subject.roles) if subject else [],
        features=sorted(access.resolver.graph.features_for(user_id)),
    )


@router.post("/password", response_model=PasswordChangeOut)
def change_password(
    body: PasswordChangeIn,
    access: AccessControl = Depends(get_access),
    user_id: int = Depends(get_current_user_id),
    token: str = Depends(get_session_token),
) -> PasswordChangeOut:
    revoked = access.passwords.change_password(
        user_id,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
        keep_token=token,
    )
    return PasswordChangeOut(revoked_sessions=revoked)
