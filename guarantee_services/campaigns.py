"""
guarantee_services.campaigns -- Campaign metadata collaborator.

Responsibility:
    The engine only needs three facts about a campaign: whether it sells
    guarantee placements, its guarantee unit (day or count) and its refund
    policy.  CampaignMetadataProvider is that interface; the static
    provider backs tests, scripts and single-tenant deployments.

Architecture position:
    Services layer.  Imports kernel domain only.

Failure modes:
    - EntityNotFoundError for an unknown campaign id.
    - Any other exception raised by a provider is translated by the
      calling service into DependencyFailureError.
"""

from __future__ import annotations

from typing import Iterable, Protocol, runtime_checkable
from uuid import UUID

from guarantee_kernel.domain.dtos import CampaignMetadata, RefundSettings
from guarantee_kernel.exceptions import (
    DependencyFailureError,
    EntityNotFoundError,
    GuaranteeKernelError,
)
from guarantee_kernel.logging_config import get_logger

logger = get_logger("services.campaigns")


@runtime_checkable
class CampaignMetadataProvider(Protocol):
    def get_campaign(self, campaign_id: UUID) -> CampaignMetadata:
        ...


class StaticCampaignProvider:
    """In-memory provider keyed by campaign id."""

    def __init__(self, campaigns: Iterable[CampaignMetadata] = ()):
        self._campaigns: dict[UUID, CampaignMetadata] = {c.campaign_id: c for c in campaigns}

    def register(self, campaign: CampaignMetadata) -> None:
        self._campaigns[campaign.campaign_id] = campaign

    def get_campaign(self, campaign_id: UUID) -> CampaignMetadata:
        try:
            return self._campaigns[campaign_id]
        except KeyError:
            raise EntityNotFoundError("Campaign", str(campaign_id)) from None


def fetch_campaign(
    provider: CampaignMetadataProvider,
    campaign_id: UUID,
    operation: str,
) -> CampaignMetadata:
    """Look up campaign metadata, translating provider failures.

    Raises:
        EntityNotFoundError: Unknown campaign (passed through).
        DependencyFailureError: The provider itself failed.
    """
    try:
        return provider.get_campaign(campaign_id)
    except GuaranteeKernelError:
        raise
    except Exception as exc:
        logger.error(
            "campaign_metadata_failed",
            extra={"campaign_id": str(campaign_id), "operation": operation},
        )
        raise DependencyFailureError("campaign_metadata", operation, str(exc)) from exc


def refund_settings_for(
    provider: CampaignMetadataProvider,
    campaign_id: UUID,
    operation: str,
    default: RefundSettings | None = None,
) -> RefundSettings:
    """Campaign refund policy, else the engine default, else RefundSettings()."""
    campaign = fetch_campaign(provider, campaign_id, operation)
    if campaign.refund_settings is not None:
        return campaign.refund_settings
    return default or RefundSettings()
