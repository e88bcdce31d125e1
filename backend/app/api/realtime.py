"""Operational view of the realtime components."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from beacon.realtime import RealtimeServices
from beacon.realtime.stores import Principal

from app.api.deps import get_current_principal, get_realtime

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.get("/stats")
def read_realtime_stats(
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, int]:
    """Number of live connections and unfinished calls in this process."""

    return realtime.stats()
