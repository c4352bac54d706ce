"""
Single-entry reward allocation.

A campaign may offer several rewards, but each participant gets exactly one
RewardRedemption row. The row points at an anchor reward (first draw reward,
otherwise the first reward) and its lucky number or redemption code is shown
against every reward of the matching type.

Workflow:
1. Reuse the participant's existing redemption if there is one
2. Otherwise validate contact + consent when a draw is on offer
3. Insert the redemption; a unique-constraint conflict means another session
   of the same participant got there first, so re-read and use that row
4. Project the single code/number onto every reward for display
5. Release downloadable files, only when the entry was just created
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import secrets
import string
from typing import Iterable

from django.conf import settings
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from ..exceptions import (
    ConsentRequired,
    RedemptionWriteConflict,
    SubmissionFailure,
)
from ..identity import Identity
from ..models import Campaign, Reward, RewardRedemption
from ..signals import reward_file_released
from ..validators import ContactDetails, format_whatsapp, validate_contact
from .dedup import has_redeemed

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.digits + string.ascii_uppercase
CODE_LENGTH = 4


@dataclass
class ClaimResult:
    redemption: RewardRedemption | None
    display: dict[int, str] = field(default_factory=dict)
    file_urls: list[str] = field(default_factory=list)
    created: bool = False

    @property
    def lucky_number(self) -> str | None:
        if self.redemption is None or self.redemption.lucky_number is None:
            return None
        return format_lucky_number(self.redemption.lucky_number)

    @property
    def redemption_code(self) -> str | None:
        return self.redemption.redemption_code if self.redemption else None


def format_lucky_number(number: int, digits: int | None = None) -> str:
    if digits is None:
        digits = getattr(settings, "AXE_LUCKY_NUMBER_DIGITS", 5)
    return str(number).zfill(digits)


def generate_redemption_code(prefix: str | None = None) -> str:
    """Code like ``AXE-7QZT``."""
    if prefix is None:
        prefix = getattr(settings, "AXE_REDEMPTION_CODE_PREFIX", "AXE")
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{prefix}-{suffix}"


def choose_anchor(rewards: Iterable[Reward]) -> Reward | None:
    """First draw reward, else the first reward, else None."""
    rewards = list(rewards)
    for reward in rewards:
        if reward.type == Reward.Type.DRAW:
            return reward
    return rewards[0] if rewards else None


def display_for(reward: Reward, redemption: RewardRedemption | None) -> str | None:
    """What to show against ``reward`` for the participant's single redemption."""
    if redemption is None:
        return None
    if reward.type == Reward.Type.DRAW and redemption.lucky_number is not None:
        return format_lucky_number(redemption.lucky_number)
    if reward.type == Reward.Type.PDF and redemption.redemption_code:
        return redemption.redemption_code
    return None


def display_map(
    rewards: Iterable[Reward], redemption: RewardRedemption | None
) -> dict[int, str]:
    display = {}
    for reward in rewards:
        value = display_for(reward, redemption)
        if value is not None:
            display[reward.id] = value
    return display


def _insert_redemption(
    campaign: Campaign,
    identity: Identity,
    anchor: Reward,
    contact: ContactDetails,
    redemption_code: str | None,
    user_email: str | None,
) -> RewardRedemption:
    whatsapp = format_whatsapp(contact.whatsapp) if contact.whatsapp else None
    try:
        with transaction.atomic():
            return RewardRedemption.objects.create(
                reward=anchor,
                campaign=campaign,
                profile_id=identity.user_id,
                fingerprint_id=identity.fingerprint_id,
                redemption_code=redemption_code,
                contact_whatsapp=whatsapp,
                contact_email=contact.email or user_email or None,
                metadata={
                    "redeemed_at": timezone.now().isoformat(),
                    "user_email": user_email,
                    "sensitive_consent": contact.sensitive_consent,
                    "single_entry": True,
                },
            )
    except IntegrityError as exc:
        raise RedemptionWriteConflict(str(exc)) from exc


def _release_files(
    campaign: Campaign, rewards: list[Reward], redemption: RewardRedemption
) -> list[str]:
    released = []
    for reward in rewards:
        if reward.type == Reward.Type.PDF and reward.file_url:
            reward_file_released.send(
                sender=Reward, campaign=campaign, reward=reward, redemption=redemption
            )
            released.append(reward.file_url)
    return released


def claim_reward(
    campaign: Campaign,
    identity: Identity,
    rewards: Iterable[Reward] | None = None,
    contact: ContactDetails | None = None,
    user_email: str | None = None,
) -> ClaimResult:
    """Issue or retrieve the participant's single redemption.

    Args:
        campaign: campaign being claimed
        identity: participant identity
        rewards: the campaign's reward set (defaults to its active rewards)
        contact: contact form, required when a draw reward exists
        user_email: authenticated user's e-mail, used when none was typed

    Raises:
        ContactValidationFailure: draw on offer and the contact form is invalid
        ConsentRequired: draw on offer and sensitive data consent is missing
        SubmissionFailure: unexpected storage error
    """
    rewards = list(rewards) if rewards is not None else campaign.active_rewards()
    anchor = choose_anchor(rewards)
    if anchor is None:
        logger.info("Claim on campaign %s without rewards ignored", campaign.slug)
        return ClaimResult(redemption=None)

    contact = contact or ContactDetails()
    created = False
    try:
        redemption = has_redeemed(campaign, identity)
        if redemption is None:
            has_draw = any(r.type == Reward.Type.DRAW for r in rewards)
            if has_draw:
                contact = validate_contact(contact)
                if not contact.sensitive_consent:
                    raise ConsentRequired("Sensitive data consent is required")
            # Redemption codes only exist for file-only reward sets
            code = None if has_draw else generate_redemption_code()
            try:
                redemption = _insert_redemption(
                    campaign, identity, anchor, contact, code, user_email
                )
                created = True
            except RedemptionWriteConflict:
                redemption = has_redeemed(campaign, identity)
                logger.warning(
                    "Redemption race lost for campaign %s (%s), reusing existing entry",
                    campaign.slug,
                    identity.fingerprint_id,
                )
                if redemption is None:
                    raise SubmissionFailure("Could not register the reward entry")
    except DatabaseError as exc:
        logger.exception("Failed to register redemption for campaign %s", campaign.slug)
        raise SubmissionFailure("Could not register the reward entry") from exc

    file_urls: list[str] = []
    if created:
        logger.info(
            "Issued redemption %s for campaign %s (lucky_number=%s, code=%s)",
            redemption.id,
            campaign.slug,
            redemption.lucky_number,
            redemption.redemption_code,
        )
        # Files are released once, on the claim that created the entry
        file_urls = _release_files(campaign, rewards, redemption)
    return ClaimResult(
        redemption=redemption,
        display=display_map(rewards, redemption),
        file_urls=file_urls,
        created=created,
    )
