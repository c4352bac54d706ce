"""
Campaign form schema: question variants, parsing and role resolution.

A campaign stores its questionnaire as JSON in ``Campaign.form_schema``::

    {"sections": [
        {"id": "s1", "title": "...", "target_roles": ["lider_terreiro"],
         "questions": [
             {"id": "q1", "type": "single_choice", "label": "...",
              "required": true, "options": [{"label": "Sim", "value": "yes"}]},
             {"id": "q2", "type": "short_text", "label": "...",
              "depends_on": {"question_id": "q1", "value": "yes"}}
         ]}
    ]}

Each question type is parsed into its own frozen dataclass so the rest of the
engine never branches on raw ``type`` strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from .exceptions import AnswerValidationError, SchemaEmpty, SchemaError

ADMIN_ROLE = "admin"
# Internal roles that must impersonate a participant role to take a survey
SYSTEM_ROLES = frozenset({"admin", "pesquisador"})

# Participant roles offered at role selection, in display order
PARTICIPANT_ROLES: list[tuple[str, str]] = [
    ("lider_terreiro", "Liderança de Terreiro"),
    ("medium", "Médium / Filho(a) de Santo"),
    ("consulente", "Consulente / Simpatizante"),
]

REQUIRED_MESSAGE = "This field is required."


@dataclass(frozen=True)
class Dependency:
    question_id: str
    value: str


@dataclass(frozen=True)
class Option:
    label: str
    value: str


@dataclass(frozen=True)
class Question:
    id: str
    label: str = ""
    help_text: str = ""
    required: bool = False
    depends_on: Dependency | None = None

    type = ""
    answerable = True


@dataclass(frozen=True)
class ShortTextQuestion(Question):
    type = "short_text"


@dataclass(frozen=True)
class LongTextQuestion(Question):
    type = "long_text"


@dataclass(frozen=True)
class SingleChoiceQuestion(Question):
    options: tuple[Option, ...] = ()

    type = "single_choice"


@dataclass(frozen=True)
class MultipleChoiceQuestion(Question):
    options: tuple[Option, ...] = ()

    type = "multiple_choice"


@dataclass(frozen=True)
class ScaleQuestion(Question):
    min: int = 1
    max: int = 5

    type = "scale"


@dataclass(frozen=True)
class InfoQuestion(Question):
    """Informational block. Carries no answer and is never required."""

    type = "info"
    answerable = False


QUESTION_TYPES: dict[str, type[Question]] = {
    cls.type: cls
    for cls in (
        ShortTextQuestion,
        LongTextQuestion,
        SingleChoiceQuestion,
        MultipleChoiceQuestion,
        ScaleQuestion,
        InfoQuestion,
    )
}


@dataclass(frozen=True)
class Section:
    id: str
    title: str = ""
    description: str = ""
    target_roles: frozenset[str] = frozenset()
    questions: tuple[Question, ...] = ()

    def applies_to(self, role: str | None) -> bool:
        if not self.target_roles:
            return True
        if not role:
            return False
        if role == ADMIN_ROLE:
            return True
        return role in self.target_roles


@dataclass(frozen=True)
class FlatQuestion:
    """A question annotated with the section it came from."""

    question: Question
    section_id: str
    section_title: str

    @property
    def id(self) -> str:
        return self.question.id


@dataclass(frozen=True)
class RoleChoice:
    id: str
    label: str


def _parse_options(raw: Any, question_id: str) -> tuple[Option, ...]:
    options = []
    for item in raw or []:
        if isinstance(item, dict):
            if "value" not in item:
                raise SchemaError(f"Option without value in question {question_id}")
            value = str(item["value"])
            options.append(Option(label=str(item.get("label", value)), value=value))
        else:
            options.append(Option(label=str(item), value=str(item)))
    return tuple(options)


def _parse_dependency(raw: Any) -> Dependency | None:
    if not raw or not isinstance(raw, dict) or not raw.get("question_id"):
        return None
    return Dependency(
        question_id=str(raw["question_id"]), value=str(raw.get("value", ""))
    )


def parse_question(raw: dict[str, Any]) -> Question:
    if not isinstance(raw, dict) or not raw.get("id"):
        raise SchemaError(f"Question without id: {raw!r}")
    question_type = raw.get("type")
    cls = QUESTION_TYPES.get(question_type)
    if cls is None:
        raise SchemaError(
            f"Unknown question type {question_type!r} for question {raw['id']}"
        )

    qid = str(raw["id"])
    kwargs: dict[str, Any] = {
        "id": qid,
        "label": raw.get("label", ""),
        "help_text": raw.get("help_text") or "",
        # Info blocks are never subject to required-validation
        "required": bool(raw.get("required")) and cls.answerable,
        "depends_on": _parse_dependency(raw.get("depends_on")),
    }
    if cls in (SingleChoiceQuestion, MultipleChoiceQuestion):
        kwargs["options"] = _parse_options(raw.get("options"), qid)
    elif cls is ScaleQuestion:
        try:
            kwargs["min"] = int(raw["min"]) if raw.get("min") is not None else 1
            kwargs["max"] = int(raw["max"]) if raw.get("max") is not None else 5
        except (TypeError, ValueError) as exc:
            raise SchemaError(f"Invalid scale bounds for question {qid}") from exc
    return cls(**kwargs)


def parse_section(raw: dict[str, Any]) -> Section:
    if not isinstance(raw, dict) or not raw.get("id"):
        raise SchemaError(f"Section without id: {raw!r}")
    return Section(
        id=str(raw["id"]),
        title=raw.get("title", ""),
        description=raw.get("description") or "",
        target_roles=frozenset(raw.get("target_roles") or ()),
        questions=tuple(parse_question(q) for q in raw.get("questions") or []),
    )


def parse_schema(form_schema: Any) -> list[Section]:
    """Parse a stored form schema into sections.

    Accepts either ``{"sections": [...]}`` or a bare list of sections.
    A missing schema parses to an empty list.
    """
    if not form_schema:
        return []
    if isinstance(form_schema, dict):
        raw_sections = form_schema.get("sections") or []
    elif isinstance(form_schema, list):
        raw_sections = form_schema
    else:
        raise SchemaError("form_schema must be an object or a list of sections")
    return [parse_section(s) for s in raw_sections]


def resolve_questions(
    sections: Iterable[Section], role: str | None
) -> list[FlatQuestion]:
    """Flatten the questions that apply to ``role``.

    Sections keep their order, then questions keep their in-section order.
    Without a role only role-agnostic sections are included.

    Raises:
        SchemaEmpty: the schema has no sections at all.
    """
    sections = list(sections)
    if not sections:
        raise SchemaEmpty("Campaign has no sections")

    flattened: list[FlatQuestion] = []
    for section in sections:
        if not section.applies_to(role):
            continue
        for question in section.questions:
            flattened.append(
                FlatQuestion(
                    question=question,
                    section_id=section.id,
                    section_title=section.title,
                )
            )
    return flattened


def available_roles(sections: Iterable[Section]) -> list[RoleChoice]:
    """Participant roles with at least one applicable section."""
    sections = list(sections)
    return [
        RoleChoice(id=role_id, label=label)
        for role_id, label in PARTICIPANT_ROLES
        if any(
            not section.target_roles or role_id in section.target_roles
            for section in sections
        )
    ]


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def validate_answer(question: Question, value: Any) -> Any:
    """Validate and normalise a raw answer for ``question``.

    Returns the value to store in the answer map, or ``None`` when there is
    nothing to store (info blocks and blank optional answers).

    Raises:
        AnswerValidationError: the value does not satisfy the question.
    """
    if not question.answerable:
        return None

    if _is_blank(value):
        if question.required:
            raise AnswerValidationError(question.id, REQUIRED_MESSAGE)
        return None

    if isinstance(question, (ShortTextQuestion, LongTextQuestion)):
        return str(value).strip()

    if isinstance(question, SingleChoiceQuestion):
        value = str(value)
        allowed = {o.value for o in question.options}
        if allowed and value not in allowed:
            raise AnswerValidationError(question.id, "Select a valid choice.")
        return value

    if isinstance(question, MultipleChoiceQuestion):
        if isinstance(value, str):
            value = [value]
        values = [str(v) for v in value]
        allowed = {o.value for o in question.options}
        if allowed and any(v not in allowed for v in values):
            raise AnswerValidationError(question.id, "Select valid choices.")
        return values

    if isinstance(question, ScaleQuestion):
        try:
            number = int(str(value).strip())
        except ValueError:
            raise AnswerValidationError(question.id, "Enter a whole number.")
        if not question.min <= number <= question.max:
            raise AnswerValidationError(
                question.id,
                f"Choose a value between {question.min} and {question.max}.",
            )
        # Scale answers are stored numeric-as-string
        return str(number)

    raise AnswerValidationError(question.id, f"Unsupported question type {question.type}")
