from django.db import DatabaseError
import pytest

from axe_app.campaigns.drafts import DraftCache, draft_key
from axe_app.campaigns.exceptions import AlreadyResponded, SubmissionFailure
from axe_app.campaigns.identity import Identity
from axe_app.campaigns.models import Campaign, ParticipantProfile, SurveyResponse
from axe_app.campaigns.services import dedup, submission
from axe_app.campaigns.services.submission import is_test_identity, submit_response


@pytest.fixture
def campaign():
    return Campaign.objects.create(
        title="Campanha", slug="campanha", status=Campaign.Status.ACTIVE
    )


@pytest.mark.django_db
def test_submission_is_idempotent(campaign):
    identity = Identity("fp-1")
    first = submit_response(campaign, identity, "medium", {"q1": "sim"}, is_test=False)
    with pytest.raises(AlreadyResponded) as exc:
        submit_response(campaign, identity, "medium", {"q1": "não"}, is_test=False)
    assert exc.value.response_id == first.id
    assert SurveyResponse.objects.filter(campaign=campaign).count() == 1
    assert SurveyResponse.objects.get().response_data == {"q1": "sim"}


@pytest.mark.django_db
def test_user_match_blocks_new_device(campaign, django_user_model):
    user = django_user_model.objects.create_user(username="u", password="x")
    submit_response(campaign, Identity("phone", user_id=user.id), "medium", {}, False)
    assert dedup.has_responded(campaign, Identity("laptop", user_id=user.id))
    assert not dedup.has_responded(campaign, Identity("laptop"))


@pytest.mark.django_db
def test_role_and_test_flag_are_stamped(campaign):
    response = submit_response(campaign, Identity("fp"), None, {}, is_test=True)
    assert response.profile_role == "anonymous"
    assert response.is_test is True


@pytest.mark.django_db
def test_drafts_cleared_on_success(campaign):
    drafts = DraftCache({draft_key(campaign.slug): '{"q1": "sim"}', "other": "keep"})
    submit_response(campaign, Identity("fp"), "medium", {"q1": "sim"}, False, drafts)
    assert drafts.load(campaign.slug) == {}
    assert drafts.store == {"other": "keep"}


@pytest.mark.django_db
def test_drafts_kept_on_failure(campaign, monkeypatch):
    drafts = DraftCache()
    drafts.save(campaign.slug, {"q1": "sim"})

    def broken_create(**kwargs):
        raise DatabaseError("connection lost")

    monkeypatch.setattr(SurveyResponse.objects, "create", broken_create)
    with pytest.raises(SubmissionFailure):
        submit_response(campaign, Identity("fp"), "medium", {"q1": "sim"}, False, drafts)
    assert drafts.load(campaign.slug) == {"q1": "sim"}
    assert not SurveyResponse.objects.exists()


@pytest.mark.django_db
def test_lost_race_reports_existing_response(campaign, monkeypatch):
    existing = SurveyResponse.objects.create(campaign=campaign, fingerprint_id="fp")
    calls = []

    def stale_then_real(campaign_, identity):
        calls.append(identity)
        if len(calls) == 1:
            # The check ran before the other session committed
            return None
        return dedup.find_response(campaign_, identity)

    monkeypatch.setattr(submission, "find_response", stale_then_real)
    with pytest.raises(AlreadyResponded) as exc:
        submit_response(campaign, Identity("fp"), "medium", {}, False)
    assert exc.value.response_id == existing.id
    assert SurveyResponse.objects.count() == 1


@pytest.mark.django_db
def test_duplicate_check_failure_is_retryable(campaign, monkeypatch):
    def broken(*args):
        raise DatabaseError("timeout")

    monkeypatch.setattr(submission, "find_response", broken)
    with pytest.raises(SubmissionFailure):
        submit_response(campaign, Identity("fp"), "medium", {}, False)


@pytest.mark.django_db
def test_authenticated_profile_is_test_data(django_user_model, settings):
    user = django_user_model.objects.create_user(username="u", password="x")
    profile = ParticipantProfile.objects.create(user=user, role="medium")
    assert is_test_identity(None) is False
    assert is_test_identity(profile) is True
    settings.AXE_AUTHENTICATED_IS_TEST = False
    assert is_test_identity(profile) is False


def test_draft_cache_ignores_corrupt_values():
    drafts = DraftCache({draft_key("c"): "{not json"})
    assert drafts.load("c") == {}
    drafts.save("c", {"q": ["a", "b"]})
    assert drafts.load("c") == {"q": ["a", "b"]}
