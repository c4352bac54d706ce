"""
Participant flow through a campaign.

One ``FlowController`` drives one participant session:

    LOADING -> CONSENT -> ROLE_SELECTION -> QUESTIONING -> SUBMITTING
            -> REWARD_OFFER -> REWARD_CLAIM -> DONE

with terminal ``ALREADY_RESPONDED``, ``CLOSED``, ``DECLINED`` and
``UNAVAILABLE`` states. Transitions that touch storage or identity are
coroutines; while one is in progress ``busy`` is set and any other transition
raises ``FlowBusyError``.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from enum import Enum
import logging
from typing import Any, Awaitable, Callable

from asgiref.sync import sync_to_async

from .drafts import DraftCache
from .exceptions import (
    AlreadyResponded,
    AnswerValidationError,
    ConsentRequired,
    ContactValidationFailure,
    FlowBusyError,
    FlowStateError,
    SchemaError,
    SchemaEmpty,
    SubmissionFailure,
)
from .identity import Identity, resolve_identity
from .models import Campaign, ParticipantProfile, Reward
from .schema import (
    SYSTEM_ROLES,
    FlatQuestion,
    RoleChoice,
    Section,
    available_roles,
    resolve_questions,
    validate_answer,
)
from .services.dedup import find_response, has_redeemed
from .services.rewards import ClaimResult, claim_reward, display_map
from .services.submission import is_test_identity, submit_response
from .services.visits import record_visit
from .validators import ContactDetails
from .visibility import is_visible, next_visible_index, previous_visible_index

logger = logging.getLogger(__name__)

NON_FIELD_ERRORS = "__all__"
_UNSET = object()


class FlowState(str, Enum):
    LOADING = "loading"
    CONSENT = "consent"
    ROLE_SELECTION = "role_selection"
    NO_QUESTIONS = "no_questions"
    QUESTIONING = "questioning"
    SUBMITTING = "submitting"
    REWARD_OFFER = "reward_offer"
    REWARD_CLAIM = "reward_claim"
    DONE = "done"
    ALREADY_RESPONDED = "already_responded"
    CLOSED = "closed"
    DECLINED = "declined"
    UNAVAILABLE = "unavailable"


TERMINAL_STATES = frozenset(
    {
        FlowState.DONE,
        FlowState.CLOSED,
        FlowState.DECLINED,
        FlowState.UNAVAILABLE,
    }
)


def compute_progress(index: int, total: int) -> int:
    """Percentage shown while at ``index`` of ``total`` questions."""
    if total <= 0:
        return 0
    return min(round((index + 1) / total * 100), 100)


def validate_answers(
    questions: list[FlatQuestion], answers: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, str]]:
    """Validate a complete answer set against the visible questions.

    Questions are walked in order so visibility is judged on the answers
    cleaned so far. Answers to hidden or unknown questions are dropped.
    """
    cleaned: dict[str, Any] = {}
    errors: dict[str, str] = {}
    for item in questions:
        if not is_visible(item, cleaned):
            continue
        try:
            value = validate_answer(item.question, answers.get(item.id))
        except AnswerValidationError as exc:
            errors[exc.question_id] = exc.message
            continue
        if value is not None:
            cleaned[item.id] = value
    return cleaned, errors


class FlowController:
    """State machine for a single participant session.

    Args:
        campaign: the campaign being taken
        fingerprint_source: coroutine function returning the device fingerprint
        profile: authenticated participant profile, if any
        drafts: draft answer cache (defaults to an in-memory cache)
        today: date used for the campaign window, defaults to the local date
    """

    def __init__(
        self,
        campaign: Campaign,
        fingerprint_source: Callable[[], Awaitable[str]],
        profile: ParticipantProfile | None = None,
        drafts: DraftCache | None = None,
        today: date | None = None,
        identity_timeout: float | None = None,
    ):
        self.campaign = campaign
        self.fingerprint_source = fingerprint_source
        self.profile = profile
        self.drafts = drafts if drafts is not None else DraftCache()
        self.today = today
        self.identity_timeout = identity_timeout

        self.state = FlowState.LOADING
        self.busy = False
        self.identity: Identity | None = None
        self.sections: list[Section] = []
        self.rewards: list[Reward] = []
        self.role: str | None = None
        self.questions: list[FlatQuestion] = []
        self.index = 0
        self.progress = 0
        self.answers: dict[str, Any] = {}
        self.errors: dict[str, str] = {}
        self.display: dict[int, str] = {}
        self.file_urls: list[str] = []
        self.closure_reason: str | None = None
        self.response_id: int | None = None

    # --- helpers -----------------------------------------------------------

    @property
    def is_test(self) -> bool:
        return is_test_identity(self.profile)

    @property
    def role_is_fixed(self) -> bool:
        """Role comes from a participant profile and cannot be chosen."""
        return self.profile is not None and self.profile.role not in SYSTEM_ROLES

    @property
    def current_question(self) -> FlatQuestion | None:
        if self.state != FlowState.QUESTIONING or not self.questions:
            return None
        return self.questions[self.index]

    def available_roles(self) -> list[RoleChoice]:
        return available_roles(self.sections)

    @contextmanager
    def _transition(self):
        if self.busy:
            raise FlowBusyError("A transition is already in progress")
        self.busy = True
        try:
            yield
        finally:
            self.busy = False

    def _require(self, *states: FlowState) -> None:
        if self.busy:
            raise FlowBusyError("A transition is already in progress")
        if self.state not in states:
            raise FlowStateError(
                f"Operation not allowed in state {self.state.value}"
            )

    def _route_role(self) -> None:
        if self.role_is_fixed:
            self._enter_questions(self.profile.role)
        else:
            self.state = FlowState.ROLE_SELECTION

    def _enter_questions(self, role: str) -> None:
        self.role = role
        self.questions = resolve_questions(self.sections, role)
        first = next_visible_index(self.questions, self.answers, 0)
        if first is None:
            self.questions = []
            self.state = FlowState.NO_QUESTIONS
            return
        self.index = first
        self.progress = compute_progress(first, len(self.questions))
        self.state = FlowState.QUESTIONING

    def _load_redemption(self) -> None:
        redemption = has_redeemed(self.campaign, self.identity)
        self.display = display_map(self.rewards, redemption)

    # --- transitions -------------------------------------------------------

    async def start(self) -> FlowState:
        """Resolve identity and route the participant to their first screen."""
        self._require(FlowState.LOADING)
        with self._transition():
            user_id = self.profile.user_id if self.profile is not None else None
            self.identity = await resolve_identity(
                self.fingerprint_source, user_id=user_id, timeout=self.identity_timeout
            )
            await sync_to_async(record_visit)(self.campaign, self.identity)

            try:
                self.sections = self.campaign.sections
                resolve_questions(self.sections, None)
            except (SchemaError, SchemaEmpty) as exc:
                logger.warning("Campaign %s unavailable: %s", self.campaign.slug, exc)
                self.state = FlowState.UNAVAILABLE
                return self.state

            self.closure_reason = self.campaign.closure_reason(self.today, self.is_test)
            if self.closure_reason is not None:
                self.state = FlowState.CLOSED
                return self.state

            self.rewards = await sync_to_async(self.campaign.active_rewards)()
            existing = await sync_to_async(find_response)(self.campaign, self.identity)
            if existing is not None:
                self.response_id = existing.id
                await sync_to_async(self._load_redemption)()
                self.state = FlowState.ALREADY_RESPONDED
                return self.state

            self.answers = self.drafts.load(self.campaign.slug)
            if self.campaign.consent_text:
                self.state = FlowState.CONSENT
            else:
                self._route_role()
            return self.state

    def accept_consent(self) -> FlowState:
        self._require(FlowState.CONSENT)
        self._route_role()
        return self.state

    def decline_consent(self) -> FlowState:
        self._require(FlowState.CONSENT)
        self.state = FlowState.DECLINED
        return self.state

    def select_role(self, role: str) -> FlowState:
        self._require(FlowState.ROLE_SELECTION)
        if role not in {choice.id for choice in self.available_roles()}:
            self.errors = {"role": "Select a valid role."}
            return self.state
        self.errors = {}
        self._enter_questions(role)
        return self.state

    def change_role(self) -> FlowState:
        self._require(FlowState.NO_QUESTIONS)
        if self.role_is_fixed:
            raise FlowStateError("Role is fixed by the participant profile")
        self.role = None
        self.state = FlowState.ROLE_SELECTION
        return self.state

    async def advance(self, value: Any = _UNSET) -> FlowState:
        """Answer the current question and move to the next visible one.

        Without ``value`` the answer already held for the question (from a
        draft, or a previous visit) is used.
        """
        self._require(FlowState.QUESTIONING)
        item = self.questions[self.index]
        if value is _UNSET:
            value = self.answers.get(item.id)

        try:
            cleaned = validate_answer(item.question, value)
        except AnswerValidationError as exc:
            self.errors = {exc.question_id: exc.message}
            return self.state
        self.errors = {}
        if cleaned is not None:
            self.answers[item.id] = cleaned
        self.drafts.save(self.campaign.slug, self.answers)

        following = next_visible_index(self.questions, self.answers, self.index + 1)
        if following is not None:
            self.index = following
            self.progress = max(
                self.progress, compute_progress(following, len(self.questions))
            )
            return self.state

        self.progress = 100
        self.state = FlowState.SUBMITTING
        return await self.submit()

    def retreat(self) -> FlowState:
        self._require(FlowState.QUESTIONING)
        self.errors = {}
        previous = previous_visible_index(self.questions, self.answers, self.index - 1)
        if previous is not None:
            self.index = previous
            self.progress = compute_progress(previous, len(self.questions))
        elif not self.role_is_fixed:
            self.state = FlowState.ROLE_SELECTION
        return self.state

    async def submit(self) -> FlowState:
        """Write the response; on a retryable failure stay in SUBMITTING."""
        self._require(FlowState.SUBMITTING)
        with self._transition():
            try:
                response = await sync_to_async(submit_response)(
                    self.campaign,
                    self.identity,
                    self.role,
                    self.answers,
                    self.is_test,
                    self.drafts,
                )
            except AlreadyResponded as exc:
                self.response_id = exc.response_id
                await sync_to_async(self._load_redemption)()
                self.state = FlowState.ALREADY_RESPONDED
                return self.state
            except SubmissionFailure as exc:
                self.errors = {NON_FIELD_ERRORS: str(exc)}
                return self.state

            self.errors = {}
            self.response_id = response.id
            self.state = FlowState.REWARD_OFFER if self.rewards else FlowState.DONE
            return self.state

    def view_rewards(self) -> FlowState:
        self._require(FlowState.ALREADY_RESPONDED)
        if self.rewards:
            self.state = FlowState.REWARD_OFFER
        return self.state

    def open_claim(self) -> FlowState:
        self._require(FlowState.REWARD_OFFER)
        self.state = FlowState.REWARD_CLAIM
        return self.state

    def _claim(self, contact: ContactDetails | None) -> ClaimResult:
        user_email = None
        if self.profile is not None:
            user_email = self.profile.user.email or None
        return claim_reward(
            self.campaign, self.identity, self.rewards, contact, user_email=user_email
        )

    async def claim(self, contact: ContactDetails | None = None) -> FlowState:
        self._require(FlowState.REWARD_OFFER, FlowState.REWARD_CLAIM)
        with self._transition():
            try:
                result = await sync_to_async(self._claim)(contact)
            except ContactValidationFailure as exc:
                self.errors = dict(exc.errors)
                self.state = FlowState.REWARD_CLAIM
                return self.state
            except ConsentRequired as exc:
                self.errors = {"sensitive_consent": str(exc)}
                self.state = FlowState.REWARD_CLAIM
                return self.state
            except SubmissionFailure as exc:
                self.errors = {NON_FIELD_ERRORS: str(exc)}
                self.state = FlowState.REWARD_CLAIM
                return self.state

            self.errors = {}
            self.display = result.display
            self.file_urls = result.file_urls
            self.state = FlowState.DONE
            return self.state

    def snapshot(self) -> dict[str, Any]:
        """JSON-serialisable view of the flow for a presentation layer."""
        current = self.current_question
        return {
            "state": self.state.value,
            "busy": self.busy,
            "role": self.role,
            "role_fixed": self.role_is_fixed,
            "question_id": current.id if current else None,
            "section_id": current.section_id if current else None,
            "progress": self.progress,
            "answers": dict(self.answers),
            "errors": dict(self.errors),
            "display": {str(k): v for k, v in self.display.items()},
            "file_urls": list(self.file_urls),
            "closure_reason": self.closure_reason,
            "response_id": self.response_id,
            "is_test": self.is_test,
            "identity_fallback": bool(self.identity and self.identity.is_fallback),
        }
