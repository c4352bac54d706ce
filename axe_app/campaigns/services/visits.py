from __future__ import annotations

import logging

from django.db import DatabaseError

from ..identity import Identity
from ..models import Campaign, CampaignVisit

logger = logging.getLogger(__name__)


def record_visit(campaign: Campaign, identity: Identity) -> CampaignVisit | None:
    """Record that a participant opened the campaign.

    Visits are informational; a storage error is logged and otherwise ignored.
    """
    try:
        return CampaignVisit.objects.create(
            campaign=campaign,
            fingerprint_id=identity.fingerprint_id,
            user_id=identity.user_id,
        )
    except DatabaseError:
        logger.warning("Could not record visit for campaign %s", campaign.slug, exc_info=True)
        return None
