from pydantic import BaseModel
from typing import List
from datetime import datetime

class SweepReportResponse(BaseModel):
    ranAt: datetime
    checked: int
    markedOverdue: int
    feesUpdated: int
    dueSoonNotified: int
    failed: List[str] = []
