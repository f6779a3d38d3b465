from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from forecaster.db.session import get_db
from forecaster.schemas.common import ok, meta_now
from forecaster.schemas.forecast import StatsOut
from forecaster.services.accuracy import accuracy_stats

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("")
def stats(
    days: int = Query(7, ge=1, le=365, description="Trailing window in days"),
    db: Session = Depends(get_db),
):
    """Consensus hit rates per window plus per-model rollups over the trailing `days`."""
    out = StatsOut.model_validate(accuracy_stats(db, trailing_days=days))
    return ok(data=out.model_dump(), meta=meta_now(days=days))
