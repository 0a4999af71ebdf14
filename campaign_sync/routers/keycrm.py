from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from campaign_sync.dependencies import Services, get_services
from campaign_sync.schemas.campaign import StagePair
from campaign_sync.schemas.crm import FindResponse, MoveRequest, MoveResponse
from campaign_sync.services.card_locator import (
    CampaignScopeError,
    CardNeedle,
    LocatorOptions,
    MatchStrategy,
    SearchScope,
    TitleMode,
)
from campaign_sync.services.card_mover import CARD_NOT_FOUND

router = APIRouter(prefix="/keycrm", tags=["keycrm"])


@router.get("/find", response_model=FindResponse)
async def find_card(
    social_id: Optional[str] = None,
    username: Optional[str] = None,
    full_name: Optional[str] = None,
    pipeline_id: Optional[int] = None,
    status_id: Optional[int] = None,
    scope: Optional[SearchScope] = None,
    strategy: str = MatchStrategy.BOTH.value,
    title_mode: TitleMode = TitleMode.EXACT,
    max_pages: Optional[int] = None,
    page_size: Optional[int] = None,
    services: Services = Depends(get_services),
):
    if scope is None:
        scope = SearchScope.CAMPAIGN if pipeline_id and status_id else SearchScope.GLOBAL

    defaults = services.locator.defaults
    try:
        options = LocatorOptions(
            max_pages=max_pages if max_pages is not None else defaults.max_pages,
            page_size=page_size if page_size is not None else defaults.page_size,
            strategy=MatchStrategy(strategy),
            title_mode=title_mode,
            deadline_seconds=defaults.deadline_seconds,
        )
    except ValueError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": "invalid_strategy", "message": f"Unknown strategy: {strategy}"},
        )

    try:
        result = await services.locator.locate(
            CardNeedle(username=social_id or username, full_name=full_name),
            scope=scope,
            pipeline_id=pipeline_id,
            status_id=status_id,
            options=options,
        )
    except CampaignScopeError as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"ok": False, "error": exc.code, "hint": exc.hint},
        )

    return FindResponse(
        ok=True,
        result=result.card,
        checked=result.checked,
        pages_fetched=result.pages_fetched,
        pagination=result.pagination.value if result.pagination else None,
        timed_out=result.timed_out,
        used={
            "scope": scope.value,
            "pipeline_id": pipeline_id,
            "status_id": status_id,
            "strategy": options.strategy.value,
            "title_mode": options.title_mode.value,
            "max_pages": options.max_pages,
            "page_size": options.page_size,
            "matched_by": result.matched_by,
        },
    )


@router.post("/move", response_model=MoveResponse)
async def move_card(request: MoveRequest, services: Services = Depends(get_services)):
    target = StagePair(pipeline_id=request.pipeline_id, status_id=request.status_id)
    outcome = await services.mover.move(request.card_id, target)
    if not outcome.ok:
        code = status.HTTP_404_NOT_FOUND if outcome.failed_with(CARD_NOT_FOUND) else status.HTTP_502_BAD_GATEWAY
        body = MoveResponse(ok=False, card_id=request.card_id, error=outcome.error_code, message=outcome.error)
        return JSONResponse(status_code=code, content=body.model_dump())
    return MoveResponse(ok=True, card_id=request.card_id, already_in_target=outcome.value.already_in_target)
