"""Campaign routing table API.

ENDPOINTS:
    GET    /campaigns                 - List active mappings (?include_inactive=true for audit)
    POST   /campaigns                 - Create or reactivate a mapping
    PUT    /campaigns/{campaign_id}   - Partial update
    DELETE /campaigns/{campaign_id}   - Soft delete (is_active=False)

Access tokens are write-only: responses carry a masked preview.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..deps import get_routing_table, require_admin
from ..exceptions import CampaignMappingConflict, CampaignMappingError, CampaignMappingNotFound
from ..schemas import CampaignCreate, CampaignOut, CampaignUpdate, ErrorResponse
from ..services.campaign_routing import CampaignRoutingTable

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/campaigns",
    tags=["Campaigns"],
    dependencies=[Depends(require_admin)],
    responses={
        401: {"description": "Unauthorized"},
        404: {"model": ErrorResponse, "description": "Mapping not found"},
    },
)


@router.get("", response_model=List[CampaignOut], response_model_by_alias=True)
def list_campaigns(
    include_inactive: bool = Query(False, description="Include soft-deleted mappings"),
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    return [CampaignOut.from_mapping(m) for m in routing.list(include_inactive=include_inactive)]


@router.post(
    "",
    response_model=CampaignOut,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Active mapping already exists"}},
)
def create_campaign(
    payload: CampaignCreate,
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    """Create a mapping. A previously deactivated campaign id is reactivated."""
    try:
        mapping = routing.create(
            campaign_id=payload.campaign_id,
            meta_pixel_id=payload.meta_pixel_id,
            meta_access_token=payload.meta_access_token,
            campaign_name=payload.campaign_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CampaignMappingConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except CampaignMappingError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return CampaignOut.from_mapping(mapping)


@router.put("/{campaign_id}", response_model=CampaignOut, response_model_by_alias=True)
def update_campaign(
    campaign_id: str,
    payload: CampaignUpdate,
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    try:
        mapping = routing.update(
            campaign_id,
            meta_pixel_id=payload.meta_pixel_id,
            meta_access_token=payload.meta_access_token,
            campaign_name=payload.campaign_name,
            is_active=payload.is_active,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CampaignMappingNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CampaignMappingError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return CampaignOut.from_mapping(mapping)


@router.delete("/{campaign_id}", response_model=CampaignOut, response_model_by_alias=True)
def delete_campaign(
    campaign_id: str,
    routing: CampaignRoutingTable = Depends(get_routing_table),
):
    """Deactivate; the row is kept for audit."""
    try:
        mapping = routing.deactivate(campaign_id)
    except CampaignMappingNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CampaignMappingError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    return CampaignOut.from_mapping(mapping)
