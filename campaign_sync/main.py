import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from campaign_sync import __version__
from campaign_sync.config import settings
from campaign_sync.dependencies import build_services
from campaign_sync.logging_config import get_logger, setup_logging
from campaign_sync.routers import campaigns, cron, keycrm, webhooks
from campaign_sync.services.campaign_registry import CampaignNotFoundError
from campaign_sync.services.card_locator import CampaignScopeError
from campaign_sync.services.conflict_validator import CampaignValidationError
from campaign_sync.services.crm_client import CrmError
from campaign_sync.store import StoreError

setup_logging(settings.log_level, json_output=not settings.debug)
logger = get_logger("main")

app = FastAPI(
    title="Campaign Sync",
    description="Campaign rule matching and KeyCRM pipeline synchronization",
    version=__version__,
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(campaigns.router)
app.include_router(keycrm.router)
app.include_router(webhooks.router)
app.include_router(cron.router)


@app.exception_handler(CampaignValidationError)
async def campaign_validation_handler(request: Request, exc: CampaignValidationError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=exc.to_result().model_dump(by_alias=True, exclude_none=True),
    )


@app.exception_handler(CampaignScopeError)
async def campaign_scope_handler(request: Request, exc: CampaignScopeError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"ok": False, "error": exc.code, "hint": exc.hint},
    )


@app.exception_handler(CampaignNotFoundError)
async def campaign_not_found_handler(request: Request, exc: CampaignNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"ok": False, "error": "campaign_not_found", "message": str(exc)},
    )


@app.exception_handler(CrmError)
@app.exception_handler(StoreError)
async def upstream_error_handler(request: Request, exc: Exception):
    logger.error(
        "Upstream failure",
        extra={"context": {"path": request.url.path, "error": str(exc)}},
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"ok": False, "error": "upstream_error", "message": str(exc)},
    )


@app.on_event("startup")
async def start_services() -> None:
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
        logger.info("Services started", extra={"context": {"crm": settings.keycrm_base_url}})


@app.on_event("shutdown")
async def stop_services() -> None:
    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.aclose()
    app.state.services = None


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}
