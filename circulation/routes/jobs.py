from fastapi import APIRouter, Depends
from sqlalchemy.orm import sessionmaker
from circulation.config import settings
from circulation.database import get_session_factory
from circulation.schemas.jobs import SweepReportResponse
from circulation.services.sweeper import sweep_overdue

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])

@router.post("/overdue-sweep", response_model=SweepReportResponse)
def run_overdue_sweep(session_factory: sessionmaker = Depends(get_session_factory)):
    """Run one overdue sweep. Called by the external scheduler."""
    report = sweep_overdue(session_factory, max_workers=settings.sweeper_max_workers)
    return SweepReportResponse.model_validate(report.to_dict())
