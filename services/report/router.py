"""
services/report/router.py
User-submitted moderation reports. Staff handle them under /api/admin/reports.
"""

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Report, ReportStatus, ReportType, User
from shared.schemas.schemas import ReportCreateRequest, ReportResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reports", tags=["Reports"])


@router.post("", response_model=ReportResponse, status_code=status.HTTP_201_CREATED)
async def create_report(
    data: ReportCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    report = Report(
        type=ReportType(data.type),
        target_id=data.target_id,
        reason=data.reason,
        reporter_id=current_user.id,
        status=ReportStatus.OPEN,
    )
    db.add(report)
    await db.commit()
    logger.info(f"Report {report.id} filed against {data.type} {data.target_id}")
    return ReportResponse.model_validate(report)
