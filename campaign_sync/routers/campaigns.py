from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from campaign_sync.dependencies import Services, get_services
from campaign_sync.schemas.campaign import (
    COUNTER_NAMES,
    Campaign,
    CampaignCandidate,
    CampaignCreate,
    CampaignPatch,
    CounterResponse,
)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


@router.get("", response_model=list[Campaign])
async def list_campaigns(active_only: bool = False, services: Services = Depends(get_services)):
    return await services.registry.list(active_only=active_only)


@router.post("", response_model=Campaign, status_code=status.HTTP_201_CREATED)
async def create_campaign(data: CampaignCreate, services: Services = Depends(get_services)):
    return await services.registry.create(data)


@router.post("/validate")
async def validate_campaign(candidate: CampaignCandidate, services: Services = Depends(get_services)):
    """Check V1/V2 uniqueness against active campaigns; 409 with conflicts on collision."""
    result = await services.registry.validate(candidate, exclude_id=candidate.id)
    body = result.model_dump(by_alias=True, exclude_none=True)
    if not result.ok:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body)
    return body


@router.get("/{campaign_id}", response_model=Campaign)
async def get_campaign(campaign_id: str, services: Services = Depends(get_services)):
    return await services.registry.get(campaign_id)


@router.patch("/{campaign_id}", response_model=Campaign)
async def update_campaign(campaign_id: str, patch: CampaignPatch, services: Services = Depends(get_services)):
    return await services.registry.update(campaign_id, patch)


@router.delete("/{campaign_id}")
async def delete_campaign(campaign_id: str, services: Services = Depends(get_services)):
    await services.registry.delete(campaign_id)
    return {"ok": True, "id": campaign_id}


@router.post("/{campaign_id}/counters/{which}", response_model=CounterResponse)
async def increment_counter(campaign_id: str, which: str, services: Services = Depends(get_services)):
    if which not in COUNTER_NAMES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown counter: {which}")
    value = await services.registry.increment_counter(campaign_id, which)
    return CounterResponse(campaign_id=campaign_id, counter=which, value=value)
