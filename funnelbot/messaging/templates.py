"""
templates.py — closed catalogue of outbound message types and their renderer.

Every MessageType carries:
  - funnel     form | appointment (decides the worker's pre-send status check)
  - stage      reminder stage number for swept reminders, else None
  - variables  Pydantic model; missing or unknown variables fail at render time
  - media      whether the variables carry an attachment URL
  - evening    sent under the evening window (19:00 reminders and the appointment chain)

render() is pure: validate variables, format text. No I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from funnelbot.errors import TemplateVariablesError
from funnelbot.scheduling.schemas import Funnel


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

class MessageType(str, Enum):
    introduction = "introduction"
    chatbot_link = "chatbot_link"
    form_reminder_19pm = "form_reminder_19pm"
    video_testimonial = "video_testimonial"
    form_reminder_1 = "form_reminder_1"
    form_reminder_2 = "form_reminder_2"
    form_reminder_3 = "form_reminder_3"
    form_summary = "form_summary"
    appointment_link = "appointment_link"
    appointment_reminder_1 = "appointment_reminder_1"
    appointment_reminder_2 = "appointment_reminder_2"
    appointment_reminder_3 = "appointment_reminder_3"
    appointment_reminder_4 = "appointment_reminder_4"
    active_session_reminder = "active_session_reminder"

    @property
    def spec(self) -> "MessageSpec":
        return MESSAGE_SPECS[self]

    @property
    def funnel(self) -> Funnel:
        return MESSAGE_SPECS[self].funnel

    @property
    def stage(self) -> Optional[int]:
        return MESSAGE_SPECS[self].stage

    @property
    def evening(self) -> bool:
        return MESSAGE_SPECS[self].evening


# ---------------------------------------------------------------------------
# Variable schemas
# ---------------------------------------------------------------------------

class NoVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ChatbotLinkVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chatbot_url: str = Field(min_length=1)


class VideoVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_url: str = Field(min_length=1)


class AppointmentLinkVariables(BaseModel):
    model_config = ConfigDict(extra="forbid")

    appointment_url: str = Field(min_length=1)


class FormSummaryVariables(BaseModel):
    """Form answers echoed back to the user. Only `name` and the link are mandatory."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    appointment_url: str = Field(min_length=1)
    lead_id: Optional[str] = None
    age_group: Optional[str] = None
    financial_goal: Optional[str] = None
    marital_status: Optional[str] = None
    employment_status: Optional[str] = None
    pension_contributions: Optional[str] = None
    monthly_salary: Optional[str] = None
    pension_capital: Optional[str] = None
    savings_and_investments: Optional[str] = None
    investment_location: Optional[str] = None
    mortgage: Optional[str] = None


@dataclass(frozen=True)
class MessageSpec:
    funnel: Funnel
    variables: Type[BaseModel]
    template: str
    stage: Optional[int] = None
    media_field: Optional[str] = None
    evening: bool = False


@dataclass(frozen=True)
class RenderedMessage:
    message_type: MessageType
    content: str
    media_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

MESSAGE_SPECS: Dict[MessageType, MessageSpec] = {
    MessageType.introduction: MessageSpec(
        funnel=Funnel.form,
        variables=NoVariables,
        template=(
            "Thanks for reaching out! 😊\n\n"
            "We help with retirement planning, pension portfolio reviews, financial "
            "planning, investments, insurance and mortgages."
        ),
    ),
    MessageType.chatbot_link: MessageSpec(
        funnel=Funnel.form,
        variables=ChatbotLinkVariables,
        template=(
            "📝 We prepared 10 short questions so we can tailor our advice to you.\n\n"
            "Open the link:\n{chatbot_url}\n\n"
            "💥 The link is valid for 24 hours 💥"
        ),
    ),
    MessageType.form_reminder_19pm: MessageSpec(
        funnel=Funnel.form,
        evening=True,
        variables=ChatbotLinkVariables,
        template=(
            "Hi, just a reminder that the questionnaire is still waiting for you:\n\n{chatbot_url}"
        ),
    ),
    MessageType.video_testimonial: MessageSpec(
        funnel=Funnel.form,
        evening=True,
        variables=VideoVariables,
        template="Sharing the experience of a family we recently worked with 🎬",
        media_field="video_url",
    ),
    MessageType.form_reminder_1: MessageSpec(
        funnel=Funnel.form,
        variables=ChatbotLinkVariables,
        stage=1,
        template="Hi 👋 You started with us earlier. The questionnaire takes two minutes:\n\n{chatbot_url}",
    ),
    MessageType.form_reminder_2: MessageSpec(
        funnel=Funnel.form,
        variables=ChatbotLinkVariables,
        stage=2,
        template="Good morning ☀️ Still interested in a personal financial review?\n\n{chatbot_url}",
    ),
    MessageType.form_reminder_3: MessageSpec(
        funnel=Funnel.form,
        variables=ChatbotLinkVariables,
        stage=3,
        template="Last reminder from us. Whenever you're ready, the questionnaire is here:\n\n{chatbot_url}",
    ),
    MessageType.form_summary: MessageSpec(
        funnel=Funnel.appointment,
        variables=FormSummaryVariables,
        template="",  # built by _render_form_summary
    ),
    MessageType.appointment_link: MessageSpec(
        funnel=Funnel.appointment,
        variables=AppointmentLinkVariables,
        template="📅 Would you like to book a meeting? Pick a time here:\n\n{appointment_url}",
    ),
    MessageType.appointment_reminder_1: MessageSpec(
        funnel=Funnel.appointment,
        evening=True,
        variables=AppointmentLinkVariables,
        stage=1,
        template="Thanks again for filling in the questionnaire! Book your meeting here:\n\n{appointment_url}",
    ),
    MessageType.appointment_reminder_2: MessageSpec(
        funnel=Funnel.appointment,
        evening=True,
        variables=AppointmentLinkVariables,
        stage=2,
        template="Hi 👋 We still have open slots this week:\n\n{appointment_url}",
    ),
    MessageType.appointment_reminder_3: MessageSpec(
        funnel=Funnel.appointment,
        evening=True,
        variables=AppointmentLinkVariables,
        stage=3,
        template="A short meeting is all it takes to get your plan moving:\n\n{appointment_url}",
    ),
    MessageType.appointment_reminder_4: MessageSpec(
        funnel=Funnel.appointment,
        evening=True,
        variables=AppointmentLinkVariables,
        stage=4,
        template="Final reminder: the booking link stays open for you:\n\n{appointment_url}",
    ),
    MessageType.active_session_reminder: MessageSpec(
        funnel=Funnel.form,
        variables=ChatbotLinkVariables,
        template="You already have an open questionnaire. Continue here:\n\n{chatbot_url}",
    ),
}

# Label shown for each optional summary answer, in display order
_SUMMARY_LINES = [
    ("age_group", "🎂 Age group"),
    ("financial_goal", "🎯 Financial goal"),
    ("marital_status", "💍 Marital status"),
    ("employment_status", "💼 Employment"),
    ("pension_contributions", "🏦 Pension contributions"),
    ("monthly_salary", "💰 Gross monthly salary"),
    ("pension_capital", "💼 Pension capital"),
    ("savings_and_investments", "💵 Savings and investments"),
    ("investment_location", "📊 Where you invest"),
    ("mortgage", "🏠 Mortgage"),
]


def staged_type(funnel: Funnel, stage: int) -> MessageType:
    """MessageType of a swept reminder stage, e.g. (form, 2) → form_reminder_2."""
    prefix = "form_reminder_" if funnel == Funnel.form else "appointment_reminder_"
    return MessageType(f"{prefix}{stage}")


def types_in_funnel(funnel: Funnel) -> list[MessageType]:
    return [t for t, spec in MESSAGE_SPECS.items() if spec.funnel == funnel]


def _render_form_summary(v: FormSummaryVariables) -> str:
    parts = ["✅ Thank you for filling in the form!", "", "📋 Your answers:", f"👤 Name: {v.name}"]
    for field_name, label in _SUMMARY_LINES:
        value = getattr(v, field_name)
        if value:
            parts.append(f"{label}: {value}")
    if v.lead_id:
        parts.append(f"\n🔖 Reference: {v.lead_id}")
    parts.append(f"\n📅 Want to book a meeting? {v.appointment_url}")
    parts.append("\n✨ We'll be in touch soon!")
    return "\n".join(parts)


def render(message_type: MessageType, variables: Optional[dict] = None) -> RenderedMessage:
    """
    Validate `variables` against the type's schema and build the message.

    Raises:
        TemplateVariablesError: with one {field, issue} entry per problem.
    """
    message_type = MessageType(message_type)
    spec = MESSAGE_SPECS[message_type]
    try:
        parsed = spec.variables.model_validate(variables or {})
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]) or None, "issue": err["msg"]}
            for err in exc.errors()
        ]
        raise TemplateVariablesError(message_type.value, details) from exc

    if message_type == MessageType.form_summary:
        content = _render_form_summary(parsed)
    else:
        content = spec.template.format(**parsed.model_dump())
    media_url = getattr(parsed, spec.media_field) if spec.media_field else None
    return RenderedMessage(message_type=message_type, content=content, media_url=media_url)
