"""Domain errors raised by the campaign engine.

Validation errors are recoverable and handled inside the flow. Storage
conflicts are resolved inside the services. Only ``SubmissionFailure`` is
meant to reach a presentation layer, as a retryable error.
"""

from __future__ import annotations


class CampaignError(Exception):
    """Base class for campaign engine errors."""


class SchemaError(CampaignError):
    """The campaign's form schema could not be parsed."""


class SchemaEmpty(CampaignError):
    """The campaign has no sections at all."""


class AnswerValidationError(CampaignError):
    def __init__(self, question_id: str, message: str):
        super().__init__(f"{question_id}: {message}")
        self.question_id = question_id
        self.message = message


class AlreadyResponded(CampaignError):
    """A response already exists for this participant.

    Only the identifier of the existing response is carried, never its content.
    """

    def __init__(self, response_id: int | None):
        super().__init__(f"Participant already responded (response {response_id})")
        self.response_id = response_id


class SubmissionFailure(CampaignError):
    """Transient storage failure while writing a response. Safe to retry."""


class RedemptionWriteConflict(CampaignError):
    """Lost the race to create a redemption; the existing row should be re-read."""


class ContactValidationFailure(CampaignError):
    def __init__(self, errors: dict[str, str]):
        super().__init__("Invalid contact details")
        self.errors = errors


class ConsentRequired(CampaignError):
    """Sensitive data consent is needed before entering a draw."""


class FlowStateError(CampaignError):
    """Operation not allowed in the flow's current state."""


class FlowBusyError(FlowStateError):
    """A transition is already awaiting I/O."""
