import asyncio
from datetime import date
import json

from asgiref.sync import async_to_sync
import pytest

from axe_app.campaigns import flow as flow_module
from axe_app.campaigns.drafts import DraftCache
from axe_app.campaigns.exceptions import FlowBusyError, FlowStateError, SubmissionFailure
from axe_app.campaigns.flow import FlowController, FlowState, compute_progress
from axe_app.campaigns.models import (
    Campaign,
    CampaignVisit,
    ParticipantProfile,
    Reward,
    RewardRedemption,
    SurveyResponse,
)
from axe_app.campaigns.services.submission import submit_response
from axe_app.campaigns.validators import ContactDetails

TODAY = date(2025, 6, 15)

SCHEMA = {
    "sections": [
        {
            "id": "geral",
            "title": "Geral",
            "target_roles": [],
            "questions": [
                {
                    "id": "q1",
                    "type": "single_choice",
                    "label": "Frequenta giras?",
                    "required": True,
                    "options": ["yes", "no"],
                },
                {
                    "id": "q2",
                    "type": "short_text",
                    "label": "Qual casa?",
                    "depends_on": {"question_id": "q1", "value": "yes"},
                },
                {"id": "q3", "type": "scale", "label": "Nota", "required": True},
            ],
        },
        {
            "id": "lideres",
            "title": "Lideranças",
            "target_roles": ["lider_terreiro"],
            "questions": [{"id": "l1", "type": "long_text", "label": "História"}],
        },
        {"id": "mediums", "target_roles": ["medium"], "questions": []},
    ]
}

CONTACT = ContactDetails(
    whatsapp="(11) 98765-4321", email="pessoa@example.com", sensitive_consent=True
)


def _source(value="fp-1"):
    async def source():
        return value

    return source


def _campaign(slug="axe", **kwargs):
    kwargs.setdefault("status", Campaign.Status.ACTIVE)
    kwargs.setdefault("form_schema", SCHEMA)
    return Campaign.objects.create(title="Axé", slug=slug, **kwargs)


def _profile(django_user_model, role, username="participante"):
    user = django_user_model.objects.create_user(
        username=username, password="x", email=f"{username}@example.com"
    )
    return ParticipantProfile.objects.create(user=user, role=role)


def _flow(campaign, fingerprint="fp-1", **kwargs):
    kwargs.setdefault("today", TODAY)
    controller = FlowController(campaign, _source(fingerprint), **kwargs)
    async_to_sync(controller.start)()
    return controller


def _advance(controller, *values):
    for value in values:
        async_to_sync(controller.advance)(value)
    return controller.state


@pytest.mark.django_db
def test_anonymous_participant_selects_role_then_answers():
    controller = _flow(_campaign())
    assert controller.state == FlowState.ROLE_SELECTION
    assert controller.is_test is False
    assert CampaignVisit.objects.filter(fingerprint_id="fp-1").count() == 1

    assert controller.select_role("consulente") == FlowState.QUESTIONING
    assert controller.current_question.id == "q1"
    assert _advance(controller, "yes", "Casa de Oxalá", "4") == FlowState.DONE

    response = SurveyResponse.objects.get()
    assert response.profile_role == "consulente"
    assert response.response_data == {"q1": "yes", "q2": "Casa de Oxalá", "q3": "4"}
    assert response.is_test is False


@pytest.mark.django_db
def test_fixed_role_skips_role_selection(django_user_model):
    profile = _profile(django_user_model, "lider_terreiro")
    controller = _flow(_campaign(), profile=profile)
    assert controller.state == FlowState.QUESTIONING
    assert controller.role == "lider_terreiro"
    assert controller.is_test is True
    assert [q.id for q in controller.questions] == ["q1", "q2", "q3", "l1"]


@pytest.mark.django_db
def test_system_role_must_choose_role(django_user_model):
    profile = _profile(django_user_model, "pesquisador")
    controller = _flow(_campaign(), profile=profile)
    assert controller.state == FlowState.ROLE_SELECTION
    controller.select_role("medium")
    assert controller.role == "medium"


@pytest.mark.django_db
def test_invalid_role_is_reported():
    controller = _flow(_campaign())
    assert controller.select_role("babalorixa") == FlowState.ROLE_SELECTION
    assert "role" in controller.errors


@pytest.mark.django_db
def test_role_without_questions_enters_empty_state():
    schema = {
        "sections": [
            {"id": "m", "target_roles": ["medium"], "questions": []},
            {
                "id": "c",
                "target_roles": ["consulente"],
                "questions": [{"id": "c1", "type": "short_text"}],
            },
        ]
    }
    controller = _flow(_campaign(form_schema=schema))
    assert controller.select_role("medium") == FlowState.NO_QUESTIONS
    assert controller.change_role() == FlowState.ROLE_SELECTION
    assert controller.select_role("consulente") == FlowState.QUESTIONING


@pytest.mark.django_db
def test_consent_gate():
    campaign = _campaign(consent_text="Aceito participar.")
    controller = _flow(campaign)
    assert controller.state == FlowState.CONSENT
    assert controller.accept_consent() == FlowState.ROLE_SELECTION

    declined = _flow(campaign, fingerprint="fp-2")
    assert declined.decline_consent() == FlowState.DECLINED
    assert not SurveyResponse.objects.exists()


@pytest.mark.django_db
def test_consent_with_fixed_role_goes_straight_to_questions(django_user_model):
    profile = _profile(django_user_model, "medium")
    controller = _flow(_campaign(consent_text="Termo"), profile=profile)
    assert controller.accept_consent() == FlowState.QUESTIONING


@pytest.mark.django_db
def test_closed_campaign_ignores_cached_answers():
    campaign = _campaign(end_date=date(2025, 6, 1))
    drafts = DraftCache()
    drafts.save(campaign.slug, {"q1": "yes"})
    controller = _flow(campaign, drafts=drafts)
    assert controller.state == FlowState.CLOSED
    assert controller.closure_reason == "ended"
    assert controller.answers == {}


@pytest.mark.django_db
def test_not_started_campaign_is_closed():
    controller = _flow(_campaign(start_date=date(2025, 7, 1)))
    assert controller.state == FlowState.CLOSED
    assert controller.snapshot()["closure_reason"] == "not_started"


@pytest.mark.django_db
def test_logged_in_participant_may_take_draft_campaign(django_user_model):
    profile = _profile(django_user_model, "medium")
    controller = _flow(_campaign(status=Campaign.Status.DRAFT), profile=profile)
    assert controller.state == FlowState.QUESTIONING
    assert controller.closure_reason is None


@pytest.mark.django_db
def test_logged_in_participant_is_closed_out_after_end_date(django_user_model):
    profile = _profile(django_user_model, "medium")
    campaign = _campaign(end_date=date(2025, 1, 1))
    drafts = DraftCache()
    drafts.save(campaign.slug, {"q1": "yes"})
    controller = _flow(campaign, profile=profile, drafts=drafts)
    assert controller.state == FlowState.CLOSED
    assert controller.closure_reason == "ended"
    assert controller.role is None
    assert controller.answers == {}


@pytest.mark.django_db
def test_empty_schema_is_unavailable():
    controller = _flow(_campaign(form_schema={"sections": []}))
    assert controller.state == FlowState.UNAVAILABLE


@pytest.mark.django_db
def test_already_responded_is_terminal_with_rewards_path():
    campaign = _campaign()
    draw = Reward.objects.create(campaign=campaign, type="draw", title="Sorteio")
    first = _flow(campaign)
    first.select_role("medium")
    _advance(first, "no", "3")
    assert first.state == FlowState.REWARD_OFFER
    first.open_claim()
    async_to_sync(first.claim)(CONTACT)

    again = _flow(campaign)
    assert again.state == FlowState.ALREADY_RESPONDED
    assert again.response_id == first.response_id
    assert again.display == {draw.id: "00001"}
    assert again.view_rewards() == FlowState.REWARD_OFFER


@pytest.mark.django_db
def test_required_answer_keeps_position():
    controller = _flow(_campaign())
    controller.select_role("medium")
    assert _advance(controller, "") == FlowState.QUESTIONING
    assert controller.current_question.id == "q1"
    assert controller.errors == {"q1": "This field is required."}
    _advance(controller, "no")
    assert controller.errors == {}
    assert controller.current_question.id == "q3"


@pytest.mark.django_db
def test_skip_correctness_in_both_directions():
    controller = _flow(_campaign())
    controller.select_role("medium")
    _advance(controller, "no")
    assert controller.current_question.id == "q3"
    controller.retreat()
    assert controller.current_question.id == "q1"


@pytest.mark.django_db
def test_retreat_at_first_question_depends_on_role_origin(django_user_model):
    chosen = _flow(_campaign("a"))
    chosen.select_role("medium")
    assert chosen.retreat() == FlowState.ROLE_SELECTION

    profile = _profile(django_user_model, "medium")
    fixed = _flow(_campaign("b"), profile=profile)
    assert fixed.retreat() == FlowState.QUESTIONING
    assert fixed.current_question.id == "q1"


@pytest.mark.django_db
def test_progress_is_monotonic_and_reaches_100(django_user_model):
    profile = _profile(django_user_model, "lider_terreiro")
    controller = _flow(_campaign(), profile=profile)
    seen = [controller.progress]
    for value in ("yes", "Casa", "5"):
        async_to_sync(controller.advance)(value)
        seen.append(controller.progress)
    assert seen == sorted(seen)
    assert controller.current_question.id == "l1"
    assert seen[-1] == 100


def test_compute_progress_is_clamped():
    assert compute_progress(0, 3) == 33
    assert compute_progress(2, 3) == 100
    assert compute_progress(5, 3) == 100
    assert compute_progress(0, 0) == 0


@pytest.mark.django_db
def test_drafts_restore_answers_and_are_saved_on_advance():
    campaign = _campaign()
    drafts = DraftCache()
    drafts.save(campaign.slug, {"q1": "yes", "q2": "Casa"})
    controller = _flow(campaign, drafts=drafts)
    assert controller.answers == {"q1": "yes", "q2": "Casa"}
    controller.select_role("medium")
    # Advance with the restored answers
    async_to_sync(controller.advance)()
    async_to_sync(controller.advance)()
    assert controller.current_question.id == "q3"
    async_to_sync(controller.advance)("2")
    assert controller.state == FlowState.DONE
    assert drafts.load(campaign.slug) == {}


@pytest.mark.django_db
def test_submission_failure_keeps_answers_and_retries(monkeypatch):
    attempts = []

    def flaky(*args, **kwargs):
        attempts.append(args)
        if len(attempts) == 1:
            raise SubmissionFailure("Could not store the response, please retry")
        return submit_response(*args, **kwargs)

    monkeypatch.setattr(flow_module, "submit_response", flaky)
    controller = _flow(_campaign())
    controller.select_role("medium")
    assert _advance(controller, "no", "1") == FlowState.SUBMITTING
    assert controller.errors == {"__all__": "Could not store the response, please retry"}
    assert controller.answers == {"q1": "no", "q3": "1"}

    assert async_to_sync(controller.submit)() == FlowState.DONE
    assert SurveyResponse.objects.count() == 1


@pytest.mark.django_db
def test_claim_validation_errors_stay_in_claim_stage():
    campaign = _campaign()
    Reward.objects.create(campaign=campaign, type="draw", title="Sorteio")
    controller = _flow(campaign)
    controller.select_role("medium")
    _advance(controller, "no", "1")
    controller.open_claim()

    async_to_sync(controller.claim)(ContactDetails(whatsapp="123", email="x"))
    assert controller.state == FlowState.REWARD_CLAIM
    assert set(controller.errors) == {"whatsapp", "email"}

    async_to_sync(controller.claim)(
        ContactDetails(whatsapp="11987654321", email="a@example.com")
    )
    assert controller.errors == {"sensitive_consent": "Sensitive data consent is required"}

    async_to_sync(controller.claim)(CONTACT)
    assert controller.state == FlowState.DONE
    assert RewardRedemption.objects.count() == 1


@pytest.mark.django_db
def test_pdf_claim_releases_files():
    campaign = _campaign()
    pdf = Reward.objects.create(
        campaign=campaign, type="pdf", title="E-book", file_url="https://example.com/e.pdf"
    )
    controller = _flow(campaign)
    controller.select_role("medium")
    _advance(controller, "no", "1")
    async_to_sync(controller.claim)()
    assert controller.state == FlowState.DONE
    assert controller.file_urls == ["https://example.com/e.pdf"]
    assert controller.snapshot()["display"][str(pdf.id)].startswith("AXE-")


@pytest.mark.django_db
def test_identity_timeout_uses_fallback():
    async def hanging():
        await asyncio.sleep(1)
        return "late"

    controller = FlowController(_campaign(), hanging, today=TODAY, identity_timeout=0.01)
    async_to_sync(controller.start)()
    assert controller.identity.is_fallback is True
    assert controller.identity.fingerprint_id.startswith("anon-")
    assert controller.snapshot()["identity_fallback"] is True


@pytest.mark.django_db
def test_operations_rejected_in_wrong_state_or_while_busy():
    controller = _flow(_campaign())
    with pytest.raises(FlowStateError):
        controller.retreat()
    controller.select_role("medium")
    controller.busy = True
    with pytest.raises(FlowBusyError):
        controller.retreat()
    with pytest.raises(FlowBusyError):
        async_to_sync(controller.advance)("yes")


@pytest.mark.django_db
def test_snapshot_is_serialisable():
    controller = _flow(_campaign())
    controller.select_role("medium")
    snapshot = controller.snapshot()
    assert json.loads(json.dumps(snapshot))["state"] == "questioning"
    assert snapshot["question_id"] == "q1"
    assert snapshot["progress"] == 33
