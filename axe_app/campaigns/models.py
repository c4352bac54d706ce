from __future__ import annotations

from datetime import date

from django.conf import settings
from django.db import models, transaction
from django.db.models import Max, Q
from django.utils import timezone

from .schema import Section, parse_schema

User = settings.AUTH_USER_MODEL


class Campaign(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        ACTIVE = "active", "Active"
        ENDED = "ended", "Ended"

    class ClosureReason(models.TextChoices):
        NOT_STARTED = "not_started", "Not started yet"
        ENDED = "ended", "Ended"
        DRAFT = "draft", "Not published"

    title = models.CharField(max_length=255)
    slug = models.SlugField(unique=True)
    description = models.TextField(blank=True)
    form_schema = models.JSONField(default=dict, blank=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    consent_text = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:  # pragma: no cover
        return self.title

    @property
    def sections(self) -> list[Section]:
        return parse_schema(self.form_schema)

    def closure_reason(self, today: date | None = None, is_test: bool = False) -> str | None:
        """Why the campaign does not accept this participant, or None when open.

        Test participants (logged-in profiles) may take a draft campaign, but
        the date window and the ended status apply to everyone.
        """
        today = today or timezone.localdate()
        if self.start_date and today < self.start_date:
            return self.ClosureReason.NOT_STARTED
        if self.end_date and today > self.end_date:
            return self.ClosureReason.ENDED
        if self.status == self.Status.ENDED:
            return self.ClosureReason.ENDED
        if self.status == self.Status.DRAFT and not is_test:
            return self.ClosureReason.DRAFT
        return None

    def is_open(self, today: date | None = None, is_test: bool = False) -> bool:
        return self.closure_reason(today, is_test) is None

    def active_rewards(self) -> list["Reward"]:
        return list(self.rewards.filter(active=True))


class Reward(models.Model):
    class Type(models.TextChoices):
        DRAW = "draw", "Prize draw"
        PDF = "pdf", "Downloadable file"

    campaign = models.ForeignKey(
        Campaign, on_delete=models.CASCADE, related_name="rewards"
    )
    type = models.CharField(max_length=10, choices=Type.choices)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    draw_at = models.DateTimeField(null=True, blank=True)
    file_url = models.URLField(max_length=500, blank=True)
    active = models.BooleanField(default=True)
    order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["order", "id"]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.title} ({self.type})"


class ParticipantProfile(models.Model):
    """Role of an authenticated participant.

    Accounts are managed elsewhere; the engine only needs to know that a
    profile exists and which role it holds.
    """

    user = models.OneToOneField(
        User, on_delete=models.CASCADE, related_name="participant_profile"
    )
    role = models.CharField(max_length=50)

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.user} ({self.role})"


class IdentityQuerySet(models.QuerySet):
    user_field = "user"

    def for_identity(self, campaign, identity):
        """Rows of ``campaign`` matching the fingerprint OR the user."""
        match = Q(fingerprint_id=identity.fingerprint_id)
        if identity.user_id is not None:
            match |= Q(**{f"{self.user_field}_id": identity.user_id})
        return self.filter(match, campaign=campaign)


class RedemptionQuerySet(IdentityQuerySet):
    user_field = "profile"


class SurveyResponse(models.Model):
    """One participant's complete answer set. Immutable once written."""

    campaign = models.ForeignKey(
        Campaign, on_delete=models.CASCADE, related_name="responses"
    )
    user = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="campaign_responses",
    )
    fingerprint_id = models.CharField(max_length=64)
    profile_role = models.CharField(max_length=50, default="anonymous")
    response_data = models.JSONField(default=dict)
    is_test = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = IdentityQuerySet.as_manager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["campaign", "fingerprint_id"],
                name="one_response_per_fingerprint_per_campaign",
            ),
            models.UniqueConstraint(
                fields=["campaign", "user"],
                condition=Q(user__isnull=False),
                name="one_response_per_user_per_campaign",
            ),
        ]
        indexes = [
            models.Index(fields=["campaign", "created_at"], name="response_campaign_created_idx"),
        ]


class RewardRedemption(models.Model):
    """The single reward entry of a participant in a campaign.

    ``reward`` is the anchor row only; the entry covers every reward of the
    campaign. ``lucky_number`` is assigned here on insert, never by callers.
    """

    reward = models.ForeignKey(
        Reward, on_delete=models.PROTECT, related_name="redemptions"
    )
    campaign = models.ForeignKey(
        Campaign, on_delete=models.CASCADE, related_name="redemptions"
    )
    profile = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="reward_redemptions",
    )
    fingerprint_id = models.CharField(max_length=64)
    redemption_code = models.CharField(max_length=32, null=True, blank=True)
    lucky_number = models.PositiveIntegerField(null=True, blank=True)
    contact_whatsapp = models.CharField(max_length=32, null=True, blank=True)
    contact_email = models.EmailField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    objects = RedemptionQuerySet.as_manager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["campaign", "fingerprint_id"],
                name="one_redemption_per_fingerprint_per_campaign",
            ),
            models.UniqueConstraint(
                fields=["campaign", "profile"],
                condition=Q(profile__isnull=False),
                name="one_redemption_per_profile_per_campaign",
            ),
            models.UniqueConstraint(
                fields=["campaign", "lucky_number"],
                condition=Q(lucky_number__isnull=False),
                name="unique_lucky_number_per_campaign",
            ),
        ]

    def save(self, *args, **kwargs):
        if (
            self._state.adding
            and self.lucky_number is None
            and self.reward.type == Reward.Type.DRAW
        ):
            with transaction.atomic():
                # Serialise number assignment per campaign
                list(Campaign.objects.select_for_update().filter(pk=self.campaign_id))
                current = RewardRedemption.objects.filter(
                    campaign_id=self.campaign_id
                ).aggregate(top=Max("lucky_number"))["top"]
                self.lucky_number = (current or 0) + 1
                super().save(*args, **kwargs)
            return
        super().save(*args, **kwargs)


class CampaignVisit(models.Model):
    campaign = models.ForeignKey(
        Campaign, on_delete=models.CASCADE, related_name="visits"
    )
    fingerprint_id = models.CharField(max_length=64)
    user = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="campaign_visits",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["campaign", "created_at"], name="visit_campaign_created_idx"),
        ]
