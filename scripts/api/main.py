"""FastAPI backend for user reports and the admin moderation console.

Endpoints:
- POST /media/{media_id}/report
- GET /media/{media_id}/visibility
- /admin/moderation/*, /admin/reports/*, /admin/activity (admin only)

Run with ``uvicorn api.main:app`` from the scripts directory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import Identity, client_ip, get_identity, get_services, require_admin
from api.schemas import (
    ActivityPage, Pagination, QueuePage, ReportCountResetRequest, ReportList,
    ReportRequest, ReportResponse, ReportReviewRequest, StatusUpdateRequest,
    TransitionResponse, VisibilityResponse
)
from models.audit import AuditQuery
from models.enums import AuditAction, ModerationStatus
from models.errors import (
    InvalidInputError, InvalidTransitionError, MediaNotFoundError, ModerationError,
    PolicyError, ReportNotFoundError, TransientModerationError
)
from models.moderation import ModerationRecord
from models.report import ReportEntry
from services.pipeline import ModerationServices

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    MediaNotFoundError: status.HTTP_404_NOT_FOUND,
    ReportNotFoundError: status.HTTP_404_NOT_FOUND,
    PolicyError: status.HTTP_400_BAD_REQUEST,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    InvalidInputError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransientModerationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_status(exc: ModerationError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def moderation_error_handler(request: Request, exc: ModerationError) -> JSONResponse:
    status_code = _error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} refused ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content={"success": False, "message": str(exc)})


# ============================================
# Public
# ============================================

@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.post("/media/{media_id}/report", status_code=status.HTTP_201_CREATED, response_model=ReportResponse)
def report_media(
    media_id: str,
    body: ReportRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    services: ModerationServices = Depends(get_services),
) -> ReportResponse:
    submission = services.reports.submit_report(
        media_id,
        reporter_id=identity.user_id,
        reason=body.reason,
        description=body.description,
        ip_address=client_ip(request),
    )
    return ReportResponse(report_id=submission.report.id, report_count=submission.report_count)


@router.get("/media/{media_id}/visibility", response_model=VisibilityResponse)
def media_visibility(media_id: str, services: ModerationServices = Depends(get_services)) -> VisibilityResponse:
    record = services.engine.get_record(media_id)
    return VisibilityResponse(media_id=media_id, status=record.status, is_visible=record.is_visible)


@router.get("/media/{media_id}/reports", response_model=ReportList)
def media_reports(
    media_id: str,
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> ReportList:
    return ReportList(reports=services.reports.list_reports(media_id))


# ============================================
# Admin: moderation
# ============================================

@router.get("/admin/moderation/queue", response_model=QueuePage)
def moderation_queue(
    status_filter: Optional[ModerationStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> QueuePage:
    items, total = services.engine.list_queue(status=status_filter, page=page, limit=limit)
    return QueuePage(items=items, pagination=Pagination.of(page, limit, total))


@router.get("/admin/moderation/stale", response_model=QueuePage)
def stale_pending(
    older_than_minutes: Optional[int] = Query(default=None, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> QueuePage:
    items = services.engine.list_stale_pending(older_than_minutes=older_than_minutes, limit=limit)
    return QueuePage(items=items, pagination=Pagination.of(1, limit, len(items)))


@router.get("/admin/moderation/summary")
def moderation_summary(
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> Dict[str, int]:
    return services.engine.status_summary()


@router.patch("/admin/moderation/{media_id}/status", response_model=TransitionResponse)
def update_moderation_status(
    media_id: str,
    body: StatusUpdateRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> TransitionResponse:
    outcome = services.engine.apply_admin_decision(
        media_id,
        admin_id=admin.user_id,
        decision=body.status,
        admin_notes=body.admin_notes,
        ip_address=client_ip(request),
    )
    return TransitionResponse(media_id=media_id, previous_status=outcome.previous_status, record=outcome.record)


@router.post("/admin/moderation/{media_id}/report-count/reset", response_model=ModerationRecord)
def reset_report_count(
    media_id: str,
    body: ReportCountResetRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> ModerationRecord:
    return services.engine.reset_report_count(
        media_id, admin_id=admin.user_id, reason=body.reason, ip_address=client_ip(request)
    )


# ============================================
# Admin: reports and activity
# ============================================

@router.get("/admin/reports/pending", response_model=ReportList)
def pending_reports(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> ReportList:
    reports, total = services.reports.list_pending_reports(page=page, limit=limit)
    return ReportList(reports=reports, pagination=Pagination.of(page, limit, total))


@router.patch("/admin/reports/{report_id}", response_model=ReportEntry)
def review_report(
    report_id: str,
    body: ReportReviewRequest,
    request: Request,
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> ReportEntry:
    return services.reports.review_report(
        report_id,
        admin_id=admin.user_id,
        status=body.status,
        admin_notes=body.admin_notes,
        ip_address=client_ip(request),
    )


@router.get("/admin/activity", response_model=ActivityPage)
def admin_activity(
    subject_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    admin: Identity = Depends(require_admin),
    services: ModerationServices = Depends(get_services),
) -> ActivityPage:
    result = services.audit.query(AuditQuery(
        subject_id=subject_id,
        actor_id=actor_id,
        action=action,
        since=since,
        until=until,
        page=page,
        limit=limit,
    ))
    return ActivityPage(entries=result.entries, pagination=Pagination.of(page, limit, result.total))


def create_app(services: Optional[ModerationServices] = None) -> FastAPI:
    """Build the API; services are built from settings on first request when not given."""
    app = FastAPI(title="Media Moderation API", version="0.1.0")
    app.state.services = services
    app.add_exception_handler(ModerationError, moderation_error_handler)
    app.include_router(router)
    return app


app = create_app()
