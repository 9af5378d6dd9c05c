"""FastAPI application exposing login, onboarding, user management and audit endpoints."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

import logging
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from prometheus_client import Counter
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import text

from . import accounts, approvals, audit, invitations
from .auth import create_access_token, get_token_payload, require_role, revoke_token
from .config import settings
from .database import SessionLocal, init_db
from .errors import Forbidden, InvalidCredentials, OpsDashError
from .models.user import User


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and the permanent admin account before serving."""
    init_db()
    accounts.ensure_admin_account()
    yield


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title, version=settings.api_version, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


@app.exception_handler(OpsDashError)
async def handle_domain_error(request: Request, exc: OpsDashError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, InvalidCredentials) else None
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.message}, headers=headers
    )


class AccountResponse(BaseModel):
    """Public fields of an account."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role: str
    is_approved: bool
    created_at: datetime
    last_login: Optional[datetime] = None
    invited_by: Optional[int] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    account: AccountResponse


class RegisterRequest(BaseModel):
    username: str
    password: str
    email: str
    role: str = "readonly"


class AccountCreatedResponse(BaseModel):
    account_id: int


class AdminActionRequest(BaseModel):
    """Body for admin actions; ``admin_id`` is optional and must match the session."""

    model_config = ConfigDict(populate_by_name=True)

    admin_id: Optional[int] = Field(None, alias="adminId")


class InviteRequest(AdminActionRequest):
    username: str
    email: str
    role: str = "readonly"


class InviteResponse(BaseModel):
    invitation_id: int
    token: str
    expires_at: datetime


class InvitationItem(BaseModel):
    id: int
    email: str
    username: str
    role: str
    token: str
    invited_by: Optional[int] = None
    inviter_username: Optional[str] = None
    invited_at: datetime
    expires_at: datetime
    status: str


class InvitationListResponse(BaseModel):
    invitations: List[InvitationItem]


class InvitationPreview(BaseModel):
    username: str
    email: str
    role: str
    expires_at: datetime


class AcceptInvitationRequest(BaseModel):
    token: str
    password: str


class UserListResponse(BaseModel):
    users: List[AccountResponse]


class RoleUpdateRequest(AdminActionRequest):
    role: str


class ApprovalItem(BaseModel):
    id: int
    user_id: int
    username: str
    email: str
    requested_role: str
    requested_at: datetime
    status: str
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None


class ApprovalListResponse(BaseModel):
    requests: List[ApprovalItem]


class DecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    reviewer_id: Optional[int] = Field(None, alias="reviewerId")


class LogActionRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=100)
    resource: str = Field(..., min_length=1, max_length=100)
    details: Optional[str] = None


class LogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    username: str
    action: str
    resource: str
    timestamp: datetime
    details: str


class LogListResponse(BaseModel):
    logs: List[LogEntry]


class PreferenceUpdate(BaseModel):
    value: str


class PreferencesResponse(BaseModel):
    preferences: Dict[str, str]


def _check_claimed_actor(current_user: User, claimed_id: Optional[int]) -> None:
    # The session decides who acts; a body id may only confirm it.
    if claimed_id is not None and claimed_id != current_user.id:
        raise Forbidden("Acting user does not match the session")


@app.post("/login", response_model=LoginResponse)
@limiter.limit(settings.login_rate_limit)
def login(request: Request, payload: LoginRequest):
    user = accounts.verify_credentials(payload.username, payload.password)
    account = AccountResponse.model_validate(user)
    if not user.is_approved:
        logger.info("login refused for unapproved account %s", user.username)
        return JSONResponse(
            status_code=403,
            content={
                "detail": "Account is pending approval",
                "account": account.model_dump(mode="json"),
            },
        )
    accounts.mark_login(user.id)
    audit.record(user.id, user.username, "login", "auth", "Logged in")
    return LoginResponse(access_token=create_access_token(user), account=account)


@app.post("/logout")
def logout(
    token_payload: dict = Depends(get_token_payload),
    current_user: User = Depends(require_role("readonly")),
) -> Dict[str, str]:
    revoke_token(token_payload, current_user.id)
    audit.record(current_user.id, current_user.username, "logout", "auth", "Logged out")
    return {"status": "logged_out"}


@app.get("/me", response_model=AccountResponse)
def me(current_user: User = Depends(require_role("readonly"))):
    return current_user


@app.post("/register", response_model=AccountCreatedResponse, status_code=201)
@limiter.limit(settings.login_rate_limit)
def register(request: Request, payload: RegisterRequest):
    account_id = approvals.register(
        payload.username, payload.password, payload.email, payload.role
    )
    return AccountCreatedResponse(account_id=account_id)


@app.post("/invite-user", response_model=InviteResponse, status_code=201)
def invite_user(
    payload: InviteRequest, current_user: User = Depends(require_role("admin"))
):
    _check_claimed_actor(current_user, payload.admin_id)
    invitation = invitations.invite(
        current_user, payload.username, payload.email, payload.role
    )
    return InviteResponse(
        invitation_id=invitation.id,
        token=invitation.token,
        expires_at=invitation.expires_at,
    )


@app.get("/invitations", response_model=InvitationListResponse)
def list_invitations(current_user: User = Depends(require_role("admin"))):
    items = [
        InvitationItem(
            id=invitation.id,
            email=invitation.email,
            username=invitation.username,
            role=invitation.role,
            token=invitation.token,
            invited_by=invitation.invited_by,
            inviter_username=inviter_username,
            invited_at=invitation.invited_at,
            expires_at=invitation.expires_at,
            status=invitations.effective_status(invitation),
        )
        for invitation, inviter_username in invitations.list_invitations()
    ]
    return InvitationListResponse(invitations=items)


@app.get("/invitations/{token}", response_model=InvitationPreview)
def preview_invitation(token: str):
    invitation = invitations.get_invitation(token)
    return InvitationPreview(
        username=invitation.username,
        email=invitation.email,
        role=invitation.role,
        expires_at=invitation.expires_at,
    )


@app.post("/accept-invitation", response_model=AccountCreatedResponse, status_code=201)
@limiter.limit(settings.login_rate_limit)
def accept_invitation(request: Request, payload: AcceptInvitationRequest):
    account_id = invitations.accept(payload.token, payload.password)
    return AccountCreatedResponse(account_id=account_id)


@app.delete("/invitations/{invitation_id}")
def revoke_invitation(
    invitation_id: int,
    payload: Optional[AdminActionRequest] = None,
    current_user: User = Depends(require_role("admin")),
) -> Dict[str, str]:
    _check_claimed_actor(current_user, payload.admin_id if payload else None)
    invitations.revoke(current_user, invitation_id)
    return {"status": "revoked"}


@app.get("/users", response_model=UserListResponse)
def list_users(current_user: User = Depends(require_role("admin"))):
    return UserListResponse(
        users=[AccountResponse.model_validate(u) for u in accounts.list_accounts()]
    )


@app.patch("/users/{user_id}/role", response_model=AccountResponse)
def change_role(
    user_id: int,
    payload: RoleUpdateRequest,
    current_user: User = Depends(require_role("admin")),
):
    _check_claimed_actor(current_user, payload.admin_id)
    return accounts.update_role(current_user, user_id, payload.role)


@app.delete("/users/{user_id}")
def delete_user(
    user_id: int,
    payload: Optional[AdminActionRequest] = None,
    current_user: User = Depends(require_role("admin")),
) -> Dict[str, str]:
    _check_claimed_actor(current_user, payload.admin_id if payload else None)
    accounts.delete_account(current_user, user_id)
    return {"status": "deleted"}


@app.get("/approval-requests", response_model=ApprovalListResponse)
def list_approval_requests(current_user: User = Depends(require_role("admin"))):
    items = [
        ApprovalItem(
            id=request.id,
            user_id=request.user_id,
            username=username,
            email=email,
            requested_role=request.requested_role,
            requested_at=request.requested_at,
            status=request.status,
            reviewed_by=request.reviewed_by,
            reviewed_at=request.reviewed_at,
        )
        for request, username, email in approvals.list_pending()
    ]
    return ApprovalListResponse(requests=items)


@app.post("/approval-requests/{request_id}")
def decide_approval_request(
    request_id: int,
    payload: DecisionRequest,
    current_user: User = Depends(require_role("admin")),
) -> Dict[str, str]:
    _check_claimed_actor(current_user, payload.reviewer_id)
    decision = approvals.decide(current_user, request_id, payload.status)
    return {"status": decision.status}


@app.post("/log-action", status_code=201)
def log_action(
    payload: LogActionRequest, current_user: User = Depends(require_role("readonly"))
) -> Dict[str, bool]:
    """Record an action performed by the caller, e.g. a resource toggle."""
    stored = audit.record(
        current_user.id,
        current_user.username,
        payload.action,
        payload.resource,
        payload.details,
    )
    return {"logged": stored}


@app.get("/user-logs", response_model=LogListResponse)
def user_logs(
    limit: Optional[int] = None,
    search: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    current_user: User = Depends(require_role("admin")),
):
    entries = audit.list_entries(limit=limit, search=search, action=action, resource=resource)
    return LogListResponse(logs=[LogEntry.model_validate(e) for e in entries])


@app.get("/preferences", response_model=PreferencesResponse)
def get_preferences(current_user: User = Depends(require_role("readonly"))):
    return PreferencesResponse(preferences=accounts.get_preferences(current_user.id))


@app.put("/preferences/{key}", response_model=PreferencesResponse)
def put_preference(
    key: str,
    payload: PreferenceUpdate,
    current_user: User = Depends(require_role("readonly")),
):
    return PreferencesResponse(
        preferences=accounts.set_preference(current_user.id, key, payload.value)
    )


@app.get("/health")
def health():
    """Report liveness and whether the account store answers."""
    body = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.api_version,
        "environment": settings.environment,
    }
    session = SessionLocal()
    try:
        session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("health check failed")
        return JSONResponse(
            status_code=500, content={"status": "error", "message": "Database unavailable", **body}
        )
    finally:
        session.close()
    return {"status": "ok", **body}
