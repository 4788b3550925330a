"""
Dashboard and report endpoints
"""

from datetime import date
from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from .dependencies import MicrofinanceSystem, Principal, get_system, get_current_principal, require_role
from ..reporting import ReportPeriod, ReportFormat
from ..users import UserRole


router = APIRouter()


@router.get("/stats")
async def dashboard_stats(
    principal: Principal = Depends(get_current_principal),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Loan totals, collection windows, top collectors and recent payments"""
    return {"stats": system.reporting_engine.dashboard_stats()}


@router.get("/collections")
async def collections_by_period(
    start_date: date,
    end_date: date,
    period: ReportPeriod = ReportPeriod.DAILY,
    format: ReportFormat = ReportFormat.DICT,
    principal: Principal = Depends(require_role(UserRole.ADMIN, UserRole.SUPERVISOR)),
    system: MicrofinanceSystem = Depends(get_system)
):
    """Collections bucketed by day, week or month"""
    engine = system.reporting_engine
    result = engine.collections_by_period(start_date, end_date, period)
    if format == ReportFormat.CSV:
        return PlainTextResponse(engine.export_report(result, format), media_type="text/csv")
    return engine.export_report(result, ReportFormat.DICT)
