"""
Participation lookups used before submitting a response or claiming a reward.

A participant is matched on the device fingerprint OR the authenticated user,
because an anonymous participant may log in later. These checks are advisory;
the unique constraints on ``SurveyResponse`` and ``RewardRedemption`` close the
race between check and write.
"""

from __future__ import annotations

from ..identity import Identity
from ..models import Campaign, RewardRedemption, SurveyResponse


def find_response(campaign: Campaign, identity: Identity) -> SurveyResponse | None:
    return (
        SurveyResponse.objects.for_identity(campaign, identity)
        .order_by("created_at", "id")
        .first()
    )


def has_responded(campaign: Campaign, identity: Identity) -> bool:
    return SurveyResponse.objects.for_identity(campaign, identity).exists()


def has_redeemed(campaign: Campaign, identity: Identity) -> RewardRedemption | None:
    """The participant's redemption for ``campaign``, if any."""
    return (
        RewardRedemption.objects.for_identity(campaign, identity)
        .select_related("reward")
        .order_by("created_at", "id")
        .first()
    )
