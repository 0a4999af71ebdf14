"""Scheduled-trigger endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.concurrency import run_in_threadpool

from campaign_sync.config import Settings, get_settings
from campaign_sync.dependencies import Services, get_services
from campaign_sync.logging_config import get_logger
from campaign_sync.services.alert_service import alert_sweep_errors

logger = get_logger("cron")

router = APIRouter(prefix="/cron", tags=["cron"])


def _normalize_token(value: Optional[str]) -> str:
    if not value:
        return ""
    value = value.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def require_cron_token(
    authorization: Optional[str] = Header(default=None),
    x_cron_token: Optional[str] = Header(default=None, alias="X-Cron-Token"),
    token: Optional[str] = Query(default=None),
    secret: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    expected = settings.cron_secret
    if not expected:
        return
    provided = [_normalize_token(authorization), x_cron_token or "", token or "", secret or ""]
    if expected not in provided:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


@router.api_route("/expire", methods=["GET", "POST"], dependencies=[Depends(require_cron_token)])
async def run_expiration_sweep(services: Services = Depends(get_services)):
    report = await services.sweep.run()
    if report.errors:
        await run_in_threadpool(alert_sweep_errors, report)
    return report.model_dump(by_alias=True)
