import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from keygate.config import settings
from keygate.core import KeyGateError
from .dependencies import ServiceDep, SweeperDep, TokenDep, service_error

logger = logging.getLogger(__name__)
router = APIRouter()


class ServiceStatus(BaseModel):
    status: str
    version: str
    active_keys: int
    timestamp: str


class StatsResponse(BaseModel):
    total: int
    used: int
    valid: int
    expired: int


class AuditEntryResponse(BaseModel):
    id: Optional[int] = None
    action: str
    key_identifier: str
    actor_id: str
    actor_name: str
    redeemer_name: Optional[str] = None
    timestamp: str
    details: Optional[str] = None


class AuditResponse(BaseModel):
    entries: List[AuditEntryResponse]
    count: int


class SweepResponse(BaseModel):
    removed: int
    identifiers: List[str]


@router.get("/status", response_model=ServiceStatus)
async def get_service_status(service: ServiceDep):
    try:
        stats = await service.stats()
    except KeyGateError as e:
        raise service_error(e)

    return ServiceStatus(
        status="online",
        version=settings.app_version,
        active_keys=stats.valid,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(service: ServiceDep):
    try:
        stats = await service.stats()
    except KeyGateError as e:
        raise service_error(e)

    return StatsResponse(**stats.to_dict())


@router.get("/audit", response_model=AuditResponse)
async def get_audit_log(
    service: ServiceDep,
    token: TokenDep,
    key: Optional[str] = None,
    limit: int = 100,
):
    try:
        entries = await service.audit_entries(key_identifier=key, limit=limit)
    except KeyGateError as e:
        raise service_error(e)

    return AuditResponse(
        entries=[AuditEntryResponse(**entry.to_dict()) for entry in entries],
        count=len(entries),
    )


@router.post("/maintenance/sweep", response_model=SweepResponse)
async def run_sweep(sweeper: SweeperDep, token: TokenDep):
    try:
        removed = await sweeper.run_once()
    except KeyGateError as e:
        raise service_error(e)

    logger.info("Manual sweep removed %d key(s)", len(removed))
    return SweepResponse(removed=len(removed), identifiers=removed)
