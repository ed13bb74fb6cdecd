"""Campaign routing table.

WHAT:
    Maps campaign ids to Meta attribution destinations (pixel + access token)
    and provides the operator-facing mutations on those mappings.

WHY:
    Conversions from different campaigns report to different pixels. When a
    campaign has no active mapping (or no campaign is known) the statically
    configured default destination is used; without a default, attribution
    is skipped for that conversion.

RULES:
    - campaign_id is unique at the table level (covers active mappings too)
    - Mappings are soft-deleted (is_active=False) and stay stored for audit
    - Inactive mappings are invisible to resolve() and to the default listing
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import CampaignMappingConflict, CampaignMappingError, CampaignMappingNotFound
from ..models import CampaignMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttributionDestination:
    """A resolved place to send an attribution event."""
    pixel_id: str
    access_token: str
    # The requesting campaign; None when no campaign was named
    campaign_id: Optional[str] = None
    # Set when the configured default stands in for the campaign
    fallback: bool = False

    @property
    def is_default(self) -> bool:
        return self.fallback or self.campaign_id is None

    @property
    def credentials(self) -> Tuple[str, str]:
        return (self.pixel_id, self.access_token)


def _required(value: Optional[str], label: str) -> str:
    if value is None or not value.strip():
        raise ValueError(f"{label} must not be empty")
    return value.strip()


class CampaignRoutingTable:
    """Read path for the fan-out sender, write path for operators.

    Usage:
        ```python
        routing = CampaignRoutingTable(db, default_pixel_id="123", default_access_token="tok")
        destinations = routing.destinations_for(["2385196923"])
        ```
    """

    def __init__(
        self,
        db: Session,
        default_pixel_id: Optional[str] = None,
        default_access_token: Optional[str] = None,
    ):
        self.db = db
        self.default_pixel_id = default_pixel_id
        self.default_access_token = default_access_token

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _get(self, campaign_id: str) -> Optional[CampaignMapping]:
        return (
            self.db.query(CampaignMapping)
            .filter(CampaignMapping.campaign_id == campaign_id)
            .first()
        )

    def resolve(self, campaign_id: str) -> Optional[CampaignMapping]:
        """Active mapping for a campaign id, or None ("use default")."""
        return (
            self.db.query(CampaignMapping)
            .filter(
                CampaignMapping.campaign_id == campaign_id,
                CampaignMapping.is_active.is_(True),
            )
            .first()
        )

    def resolve_default(self) -> Optional[AttributionDestination]:
        """Default destination from configuration, or None ("skip attribution")."""
        if not self.default_pixel_id or not self.default_access_token:
            return None
        return AttributionDestination(
            pixel_id=self.default_pixel_id,
            access_token=self.default_access_token,
        )

    def destinations_for(self, campaign_ids: Iterable[str]) -> List[AttributionDestination]:
        """Resolve every campaign id to a destination.

        Unknown or inactive campaigns fall back to the default, tagged with
        the campaign that asked for it. Only destinations with the same pixel
        AND the same access token collapse into one attempt; campaigns sharing
        a pixel under different tokens are each tried. An empty list means
        attribution should be skipped.
        """
        destinations: List[AttributionDestination] = []
        seen = set()

        def _add(destination: Optional[AttributionDestination]) -> None:
            if destination is None or destination.credentials in seen:
                return
            seen.add(destination.credentials)
            destinations.append(destination)

        campaign_ids = list(campaign_ids)
        if not campaign_ids:
            _add(self.resolve_default())
            return destinations

        default = self.resolve_default()
        for campaign_id in campaign_ids:
            mapping = self.resolve(campaign_id)
            if mapping is None:
                logger.info(f"[CAMPAIGNS] No active mapping for campaign {campaign_id}, using default")
                if default is not None:
                    _add(replace(default, campaign_id=campaign_id, fallback=True))
                continue
            _add(AttributionDestination(
                pixel_id=mapping.meta_pixel_id,
                access_token=mapping.meta_access_token,
                campaign_id=mapping.campaign_id,
            ))

        return destinations

    def list(self, include_inactive: bool = False) -> List[CampaignMapping]:
        """Mappings newest first; inactive ones only for the audit listing."""
        query = self.db.query(CampaignMapping)
        if not include_inactive:
            query = query.filter(CampaignMapping.is_active.is_(True))
        return query.order_by(CampaignMapping.created_at.desc()).all()

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _commit(self, campaign_id: str) -> None:
        """Commit a mapping change; the session is rolled back on any failure.

        Raises:
            CampaignMappingConflict: The unique campaign_id constraint fired
            CampaignMappingError: Any other store failure
        """
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise CampaignMappingConflict(f"Campaign mapping already exists for {campaign_id}") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[CAMPAIGNS] Store error writing campaign {campaign_id}: {e}")
            raise CampaignMappingError(f"Could not save campaign mapping {campaign_id}") from e

    def create(
        self,
        campaign_id: str,
        meta_pixel_id: str,
        meta_access_token: str,
        campaign_name: Optional[str] = None,
    ) -> CampaignMapping:
        """Create a mapping, or reactivate a soft-deleted one with new credentials.

        Raises:
            ValueError: A required field is empty
            CampaignMappingConflict: An active mapping already uses this campaign id
        """
        campaign_id = _required(campaign_id, "campaign_id")
        meta_pixel_id = _required(meta_pixel_id, "meta_pixel_id")
        meta_access_token = _required(meta_access_token, "meta_access_token")

        mapping = self._get(campaign_id)
        if mapping is not None and mapping.is_active:
            raise CampaignMappingConflict(f"Campaign mapping already exists for {campaign_id}")

        if mapping is None:
            mapping = CampaignMapping(campaign_id=campaign_id)
            self.db.add(mapping)
            action = "Created"
        else:
            action = "Reactivated"

        mapping.meta_pixel_id = meta_pixel_id
        mapping.meta_access_token = meta_access_token
        mapping.campaign_name = campaign_name
        mapping.is_active = True

        self._commit(campaign_id)
        self.db.refresh(mapping)
        logger.info(f"[CAMPAIGNS] {action} mapping for campaign {campaign_id}")
        return mapping

    def update(
        self,
        campaign_id: str,
        meta_pixel_id: Optional[str] = None,
        meta_access_token: Optional[str] = None,
        campaign_name: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> CampaignMapping:
        """Partial update; only supplied fields change.

        Raises:
            ValueError: A supplied credential field is empty
            CampaignMappingNotFound: No mapping (active or not) for the id
            CampaignMappingError: The store rejected the write
        """
        mapping = self._get(campaign_id)
        if mapping is None:
            raise CampaignMappingNotFound(f"Campaign mapping not found for {campaign_id}")

        # Validate everything before touching the row
        changes = {}
        if meta_pixel_id is not None:
            changes["meta_pixel_id"] = _required(meta_pixel_id, "meta_pixel_id")
        if meta_access_token is not None:
            changes["meta_access_token"] = _required(meta_access_token, "meta_access_token")
        if campaign_name is not None:
            changes["campaign_name"] = campaign_name
        if is_active is not None:
            changes["is_active"] = is_active

        for field, value in changes.items():
            setattr(mapping, field, value)

        self._commit(campaign_id)
        self.db.refresh(mapping)
        logger.info(f"[CAMPAIGNS] Updated mapping for campaign {campaign_id}")
        return mapping

    def deactivate(self, campaign_id: str) -> CampaignMapping:
        """Soft delete. Idempotent for already inactive mappings.

        Raises:
            CampaignMappingNotFound: No mapping for the id
        """
        mapping = self._get(campaign_id)
        if mapping is None:
            raise CampaignMappingNotFound(f"Campaign mapping not found for {campaign_id}")

        if mapping.is_active:
            mapping.is_active = False
            self._commit(campaign_id)
            self.db.refresh(mapping)
            logger.info(f"[CAMPAIGNS] Deactivated mapping for campaign {campaign_id}")
        return mapping
