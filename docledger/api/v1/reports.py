import logging
from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from docledger.core.auth import LEDGER_ROLES, REVIEW_ROLES, CurrentUser, require_roles
from docledger.core.config import get_settings
from docledger.core.dependencies import get_db
from docledger.models.accounting import Report
from docledger.schemas.ledger import ReportOut, ReportType
from docledger.services import report_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/reports/{report_type}", response_model=ReportOut)
def read_report(
    report_type: ReportType,
    period_start: date = Query(...),
    period_end: date = Query(...),
    current_user: CurrentUser = Depends(require_roles(*REVIEW_ROLES)),
    db: Session = Depends(get_db),
):
    report = report_service.read_report(db, report_type, period_start, period_end, actor_id=current_user.id)
    return _report_to_out(report)


@router.post("/reports/{report_id}/refresh", response_model=ReportOut)
def refresh_report(
    report_id: str,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    return _report_to_out(report_service.refresh_report(db, report_id, actor_id=current_user.id))


@router.post("/reports/{report_id}/archive", response_model=ReportOut)
def archive_report(
    report_id: str,
    current_user: CurrentUser = Depends(require_roles(*LEDGER_ROLES)),
    db: Session = Depends(get_db),
):
    return _report_to_out(report_service.archive_report(db, report_id, actor_id=current_user.id))


def _report_to_out(r: Report) -> ReportOut:
    return ReportOut(
        id=str(r.id),
        report_type=r.report_type,
        period_start=r.period_start,
        period_end=r.period_end,
        version=r.version,
        status=r.status,
        cached_data=r.cached_data,
        is_balanced=report_service.is_balanced(r.report_type, r.cached_data, get_settings().balance_tolerance),
        failure_reason=r.failure_reason,
        view_count=r.view_count,
        generated_at=r.generated_at,
        refreshed_at=r.refreshed_at,
        archived_at=r.archived_at,
    )
