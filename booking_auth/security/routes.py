# booking_auth/security/routes.py
"""Admin-only security dashboard: metrics, triage of suspicious events, unlocks."""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from booking_auth.auth.audit import AuditLog
from booking_auth.auth.context import AuthContext
from booking_auth.auth.guard import require_admin
from booking_auth.auth.routes import get_auth_service
from booking_auth.auth.services import AuthService
from booking_auth.database import get_db
from booking_auth.errors import NotFoundError, ValidationError
from booking_auth.models import AuditLogEntry, EventType
from booking_auth.schemas import AuditEntry, ResolveResponse, SecurityMetrics, UserProfile

router = APIRouter(dependencies=[Depends(require_admin)])


def get_audit_log(request: Request) -> AuditLog:
    return request.app.state.audit


@router.get("/metrics", response_model=SecurityMetrics)
async def metrics(hours: int = Query(24, ge=1, le=24 * 90), audit: AuditLog = Depends(get_audit_log)):
    data = await audit.metrics(hours)
    data["recentEvents"] = [AuditEntry.model_validate(e) for e in data["recentEvents"]]
    return SecurityMetrics(**data)


@router.get("/suspicious", response_model=list[AuditEntry])
async def suspicious(limit: int = Query(50, ge=1, le=500), audit: AuditLog = Depends(get_audit_log)):
    return [AuditEntry.model_validate(e) for e in await audit.recent_suspicious(limit)]


@router.get("/user/{account_id}", response_model=list[AuditEntry])
async def account_trail(
    account_id: str, limit: int = Query(50, ge=1, le=500), audit: AuditLog = Depends(get_audit_log)
):
    return [AuditEntry.model_validate(e) for e in await audit.for_account(account_id, limit)]


@router.get("/events/{event_type}", response_model=list[AuditEntry])
async def events_by_type(
    event_type: str, limit: int = Query(100, ge=1, le=1000), audit: AuditLog = Depends(get_audit_log)
):
    try:
        kind = EventType(event_type.upper())
    except ValueError:
        raise ValidationError(f"Unknown event type: {event_type}")
    return [AuditEntry.model_validate(e) for e in await audit.by_type(kind, limit)]


@router.post("/resolve/{entry_id}", response_model=ResolveResponse)
async def resolve(entry_id: str, db: AsyncSession = Depends(get_db), audit: AuditLog = Depends(get_audit_log)):
    # flipping an already-resolved entry is a no-op, not an error
    if await db.get(AuditLogEntry, entry_id) is None:
        raise NotFoundError("Audit log entry not found")
    await audit.resolve(entry_id)
    return ResolveResponse(id=entry_id, resolved=True)


@router.post("/unlock/{account_id}", response_model=UserProfile)
async def unlock(
    account_id: str,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    service: AuthService = Depends(get_auth_service),
):
    account = await service.unlock(db, account_id, admin)
    return UserProfile.model_validate(account)
