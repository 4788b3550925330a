"""
Daily spreadsheet backup endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import MicrofinanceSystem, Principal, get_system, require_role
from .schemas import DailyBackupRequest
from ..audit import AuditEventType
from ..errors import InternalError
from ..logging_config import get_logger, log_action
from ..users import UserRole


router = APIRouter()
logger = get_logger("microfinance.api.backup")
supervisors = require_role(UserRole.ADMIN, UserRole.SUPERVISOR)


@router.post("/daily")
async def run_daily_backup(
    request: Optional[DailyBackupRequest] = None,
    principal: Principal = Depends(supervisors),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Build the day's summary and push it to the backup service"""
    day = request.day if request else None
    summary = system.reporting_engine.daily_summary(day)

    if not system.backup_service.backup_daily(summary):
        log_action(
            logger, "error", "Daily backup failed",
            user_id=principal.user_id, action="backup", resource="backup",
            extra={"date": summary["date"]}
        )
        raise InternalError("Daily backup failed")

    system.audit_trail.log_event(
        AuditEventType.BACKUP_CREATED, "backup", summary["date"],
        {"payments": summary["total_payments"], "total_collected": summary["total_collected"]},
        user_id=principal.user_id
    )
    log_action(
        logger, "info", "Daily backup completed",
        user_id=principal.user_id, action="backup", resource="backup",
        extra={"date": summary["date"], "payments": summary["total_payments"]}
    )
    return {"message": "Backup completed", "summary": summary}


@router.get("/daily")
async def daily_backup_status(
    day: Optional[date] = Query(None, alias="date"),
    principal: Principal = Depends(supervisors),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Whether a day's summary has reached the backup service"""
    day = day or system.reporting_engine.today()
    return {"status": system.backup_service.backup_status(day)}
