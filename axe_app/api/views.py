import logging
from typing import Any

from asgiref.sync import async_to_sync
from django.shortcuts import get_object_or_404
from rest_framework import serializers
from rest_framework.decorators import api_view
from rest_framework.response import Response

from axe_app.campaigns.drafts import DraftCache
from axe_app.campaigns.exceptions import (
    AlreadyResponded,
    ConsentRequired,
    ContactValidationFailure,
    SchemaEmpty,
    SchemaError,
    SubmissionFailure,
)
from axe_app.campaigns.flow import validate_answers
from axe_app.campaigns.identity import Identity, request_fingerprint, resolve_identity
from axe_app.campaigns.models import Campaign, ParticipantProfile, Reward
from axe_app.campaigns.schema import (
    ADMIN_ROLE,
    SYSTEM_ROLES,
    FlatQuestion,
    MultipleChoiceQuestion,
    ScaleQuestion,
    Section,
    SingleChoiceQuestion,
    available_roles,
    resolve_questions,
)
from axe_app.campaigns.services.dedup import find_response, has_redeemed
from axe_app.campaigns.services.rewards import (
    claim_reward,
    display_map,
    format_lucky_number,
)
from axe_app.campaigns.services.submission import is_test_identity, submit_response
from axe_app.campaigns.validators import ContactDetails

logger = logging.getLogger(__name__)


class RewardSerializer(serializers.ModelSerializer):
    has_file = serializers.SerializerMethodField()

    class Meta:
        model = Reward
        fields = ["id", "type", "title", "description", "draw_at", "has_file"]

    def get_has_file(self, obj: Reward) -> bool:
        return bool(obj.file_url)


class CampaignSerializer(serializers.ModelSerializer):
    class Meta:
        model = Campaign
        fields = [
            "id",
            "slug",
            "title",
            "description",
            "status",
            "start_date",
            "end_date",
            "consent_text",
        ]


class DraftSerializer(serializers.Serializer):
    answers = serializers.DictField(child=serializers.JSONField())


class ResponseSubmitSerializer(serializers.Serializer):
    role = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    answers = serializers.DictField(child=serializers.JSONField(), default=dict)


class ClaimSerializer(serializers.Serializer):
    whatsapp = serializers.CharField(default="", allow_blank=True, max_length=32)
    email = serializers.CharField(default="", allow_blank=True, max_length=254)
    sensitive_consent = serializers.BooleanField(default=False)


def serialize_question(item: FlatQuestion) -> dict[str, Any]:
    question = item.question
    data: dict[str, Any] = {
        "id": question.id,
        "type": question.type,
        "label": question.label,
        "help_text": question.help_text,
        "required": question.required,
        "section_id": item.section_id,
        "section_title": item.section_title,
        "depends_on": None,
    }
    if question.depends_on is not None:
        data["depends_on"] = {
            "question_id": question.depends_on.question_id,
            "value": question.depends_on.value,
        }
    if isinstance(question, (SingleChoiceQuestion, MultipleChoiceQuestion)):
        data["options"] = [
            {"label": option.label, "value": option.value} for option in question.options
        ]
    if isinstance(question, ScaleQuestion):
        data["min"] = question.min
        data["max"] = question.max
    return data


def _participant_profile(request) -> ParticipantProfile | None:
    user = request.user
    if not user or not user.is_authenticated:
        return None
    return ParticipantProfile.objects.filter(user=user).first()


def _resolve_identity(request) -> Identity:
    user_id = request.user.id if request.user.is_authenticated else None
    return async_to_sync(resolve_identity)(request_fingerprint(request), user_id=user_id)


def _effective_role(
    requested: str | None, profile: ParticipantProfile | None, sections: list[Section]
) -> tuple[str | None, str | None]:
    """Role used for the submission and an error message, if the role is invalid."""
    if profile is not None and profile.role not in SYSTEM_ROLES:
        return profile.role, None
    if not requested:
        return None, "Select a role."
    allowed = {choice.id for choice in available_roles(sections)}
    if requested not in allowed and not (
        profile is not None and profile.role == ADMIN_ROLE and requested == ADMIN_ROLE
    ):
        return None, "Select a valid role."
    return requested, None


@api_view(["GET"])
def campaign_detail(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    profile = _participant_profile(request)
    try:
        roles = available_roles(campaign.sections)
    except SchemaError:
        logger.warning("Campaign %s has an unreadable schema", slug)
        roles = []
    data = CampaignSerializer(campaign).data
    data["closure_reason"] = campaign.closure_reason(is_test=is_test_identity(profile))
    data["roles"] = [{"id": role.id, "label": role.label} for role in roles]
    data["role"] = profile.role if profile is not None else None
    data["rewards"] = RewardSerializer(campaign.active_rewards(), many=True).data
    return Response(data)


@api_view(["GET"])
def participation(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    identity = _resolve_identity(request)
    response = find_response(campaign, identity)
    redemption = has_redeemed(campaign, identity)
    return Response(
        {
            "has_responded": response is not None,
            "response_id": response.id if response else None,
            "has_redeemed": redemption is not None,
            "display": display_map(campaign.active_rewards(), redemption),
        }
    )


@api_view(["GET"])
def questions(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    role = request.query_params.get("role") or None
    try:
        flattened = resolve_questions(campaign.sections, role)
    except (SchemaEmpty, SchemaError):
        return Response({"detail": "This campaign is not available."}, status=404)
    return Response(
        {
            "role": role,
            "count": len(flattened),
            "questions": [serialize_question(item) for item in flattened],
        }
    )


@api_view(["GET", "PUT"])
def draft(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    drafts = DraftCache(request.session)
    if request.method == "GET":
        return Response({"answers": drafts.load(campaign.slug)})

    ser = DraftSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    drafts.save(campaign.slug, ser.validated_data["answers"])
    return Response({"answers": ser.validated_data["answers"]})


@api_view(["POST"])
def submit(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    ser = ResponseSubmitSerializer(data=request.data)
    ser.is_valid(raise_exception=True)

    profile = _participant_profile(request)
    is_test = is_test_identity(profile)
    closure = campaign.closure_reason(is_test=is_test)
    if closure is not None:
        return Response(
            {"detail": "This campaign is closed.", "closure_reason": closure},
            status=403,
        )

    try:
        sections = campaign.sections
        resolve_questions(sections, None)
    except (SchemaEmpty, SchemaError):
        return Response({"detail": "This campaign is not available."}, status=404)

    role, role_error = _effective_role(ser.validated_data.get("role"), profile, sections)
    if role_error:
        return Response({"errors": {"role": role_error}}, status=400)

    flattened = resolve_questions(sections, role)
    if not flattened:
        return Response(
            {"errors": {"role": "No questions for this role."}}, status=400
        )

    answers, errors = validate_answers(flattened, ser.validated_data["answers"])
    if errors:
        return Response({"errors": errors}, status=400)

    identity = _resolve_identity(request)
    try:
        response = submit_response(
            campaign,
            identity,
            role,
            answers,
            is_test,
            drafts=DraftCache(request.session),
        )
    except AlreadyResponded as exc:
        return Response(
            {"detail": "You have already responded.", "response_id": exc.response_id},
            status=409,
        )
    except SubmissionFailure as exc:
        return Response({"detail": str(exc), "retryable": True}, status=503)

    return Response(
        {
            "id": response.id,
            "profile_role": response.profile_role,
            "is_test": response.is_test,
            "has_rewards": bool(campaign.active_rewards()),
        },
        status=201,
    )


@api_view(["POST"])
def redeem(request, slug: str):
    campaign = get_object_or_404(Campaign, slug=slug)
    ser = ClaimSerializer(data=request.data)
    ser.is_valid(raise_exception=True)

    identity = _resolve_identity(request)
    if find_response(campaign, identity) is None:
        return Response(
            {"detail": "Respond to the campaign before claiming rewards."}, status=403
        )

    contact = ContactDetails(
        whatsapp=ser.validated_data["whatsapp"],
        email=ser.validated_data["email"],
        sensitive_consent=ser.validated_data["sensitive_consent"],
    )
    user_email = request.user.email if request.user.is_authenticated else None
    try:
        result = claim_reward(campaign, identity, contact=contact, user_email=user_email or None)
    except ContactValidationFailure as exc:
        return Response({"errors": exc.errors}, status=400)
    except ConsentRequired as exc:
        return Response({"errors": {"sensitive_consent": str(exc)}}, status=400)
    except SubmissionFailure as exc:
        return Response({"detail": str(exc), "retryable": True}, status=503)

    redemption = result.redemption
    return Response(
        {
            "created": result.created,
            "redemption_id": redemption.id if redemption else None,
            "lucky_number": (
                format_lucky_number(redemption.lucky_number)
                if redemption and redemption.lucky_number is not None
                else None
            ),
            "redemption_code": redemption.redemption_code if redemption else None,
            "display": result.display,
            "file_urls": result.file_urls,
        }
    )
