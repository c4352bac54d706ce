"""Writes a participant's final answer set as a single SurveyResponse."""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction

from ..drafts import DraftCache
from ..exceptions import AlreadyResponded, SubmissionFailure
from ..identity import Identity
from ..models import Campaign, ParticipantProfile, SurveyResponse
from .dedup import find_response

logger = logging.getLogger(__name__)

ANONYMOUS_ROLE = "anonymous"


def is_test_identity(profile: ParticipantProfile | None) -> bool:
    """Whether responses from this participant are flagged as test data.

    Any authenticated profile counts as test data unless
    ``AXE_AUTHENTICATED_IS_TEST`` is turned off.
    """
    if profile is None:
        return False
    return bool(getattr(settings, "AXE_AUTHENTICATED_IS_TEST", True))


def submit_response(
    campaign: Campaign,
    identity: Identity,
    role: str | None,
    answers: dict[str, Any],
    is_test: bool,
    drafts: DraftCache | None = None,
) -> SurveyResponse:
    """Persist the response, at most once per (campaign, identity).

    Raises:
        AlreadyResponded: a response exists for this participant; carries only
            the existing response id.
        SubmissionFailure: storage error, nothing was written, safe to retry.
    """
    try:
        existing = find_response(campaign, identity)
    except DatabaseError as exc:
        logger.exception("Duplicate check failed for campaign %s", campaign.slug)
        raise SubmissionFailure("Could not verify previous participation") from exc
    if existing is not None:
        raise AlreadyResponded(existing.id)

    try:
        with transaction.atomic():
            response = SurveyResponse.objects.create(
                campaign=campaign,
                user_id=identity.user_id,
                fingerprint_id=identity.fingerprint_id,
                profile_role=role or ANONYMOUS_ROLE,
                response_data=dict(answers),
                is_test=is_test,
            )
    except IntegrityError:
        # Another session of the same participant won the race
        existing = find_response(campaign, identity)
        logger.warning(
            "Duplicate response rejected by storage for campaign %s (%s)",
            campaign.slug,
            identity.fingerprint_id,
        )
        raise AlreadyResponded(existing.id if existing else None)
    except DatabaseError as exc:
        logger.exception("Failed to store response for campaign %s", campaign.slug)
        raise SubmissionFailure("Could not store the response, please retry") from exc

    if drafts is not None:
        drafts.clear(campaign.slug)
    logger.info(
        "Stored response %s for campaign %s (role=%s, test=%s)",
        response.id,
        campaign.slug,
        response.profile_role,
        is_test,
    )
    return response
