"""Maintenance router for on-demand sweeps and worker status."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession, StaffAuth
from ..core.exceptions import ProblemDetailsException, internal_error
from ..schemas.auth import Principal
from ..schemas.common import API_PROBLEMS
from ..schemas.maintenance import SweepReport, WorkerStatusList
from ..services.reconciliation_service import ReconciliationService
from ..workers.manager import worker_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/maintenance", tags=["maintenance"], responses=API_PROBLEMS)


@router.post("/sweep", response_model=SweepReport)
async def run_sweep(
    staff: Principal = StaffAuth,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Run the reconciliation sweep now (staff only)."""
    try:
        report = await ReconciliationService(db).sweep()
        logger.info("On-demand sweep requested", extra={"staff_id": staff.user_id})
        response_data = SweepReport(**report.to_dict())
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
    except ProblemDetailsException:
        raise
    except Exception as e:
        raise internal_error("Unexpected error in reconciliation sweep", e, staff_id=staff.user_id) from e


@router.post("/workers", response_model=WorkerStatusList)
async def worker_status(staff: Principal = StaffAuth) -> JSONResponse:
    response_data = WorkerStatusList(workers=worker_manager.get_worker_status())
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
