"""Template catalog and placeholder rendering for reminder emails.

Rendering is a literal substitution pass, not a templating engine:

* ``{{#if key}}...{{/if}}`` keeps its content only when ``key`` has a
  truthy value in the context;
* ``{{key}}`` is replaced by the context value, and left verbatim when the
  key is missing, so optional fields never break a send.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import datetime, tzinfo

from workshop_reminders.domain.models import (
    BookingContext,
    RenderedMessage,
    ReminderKind,
    Template,
)
from workshop_reminders.observability import get_logger

logger = get_logger(__name__)

_CONDITIONAL = re.compile(r"\{\{#if (\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

DEFAULT_ATTENDEE_NAME = "Awesome Attendee"
DEFAULT_WORKSHOP_NAME = "Amazing Workshop"

_DETAILS_TEXT = """\
Date: {{workshopDate}}
Time: {{workshopTime}}
{{#if location}}Location: {{location}}
{{/if}}{{#if zoomLink}}Zoom Link: {{zoomLink}}
{{/if}}"""

_DETAILS_HTML = """\
<p><strong>Date:</strong> {{workshopDate}}<br>
<strong>Time:</strong> {{workshopTime}}<br>
{{#if location}}<strong>Location:</strong> {{location}}<br>{{/if}}
{{#if zoomLink}}<strong>Zoom Link:</strong> <a href="{{zoomLink}}">Join Workshop</a><br>{{/if}}</p>"""

DEFAULT_TEMPLATES: dict[ReminderKind, Template] = {
    ReminderKind.T_MINUS_48H: Template(
        kind=ReminderKind.T_MINUS_48H,
        subject="Get Ready! {{workshopName}} is in 2 Days",
        html_body=(
            "<h1>Get Ready for an Amazing Experience!</h1>\n"
            "<p>Hi {{attendeeName}},</p>\n"
            "<p>Your <strong>{{workshopName}}</strong> is coming up in just 2 days!</p>\n"
            + _DETAILS_HTML
            + "\n<p>We can't wait to see you there!</p>"
        ),
        text_body=(
            "Hi {{attendeeName}},\n\n"
            "Your {{workshopName}} is coming up in just 2 days!\n\n"
            + _DETAILS_TEXT
            + "\nWe can't wait to see you there!\n"
        ),
    ),
    ReminderKind.T_MINUS_24H: Template(
        kind=ReminderKind.T_MINUS_24H,
        subject="Tomorrow is the Day! {{workshopName}}",
        html_body=(
            "<h1>Tomorrow is YOUR Day!</h1>\n"
            "<p>Hi {{attendeeName}},</p>\n"
            "<p>Your <strong>{{workshopName}}</strong> is TOMORROW!</p>\n"
            + _DETAILS_HTML
            + "\n<p>Get a good night's sleep and bring your enthusiasm!</p>"
        ),
        text_body=(
            "Hi {{attendeeName}},\n\n"
            "Your {{workshopName}} is TOMORROW!\n\n"
            + _DETAILS_TEXT
            + "\nGet a good night's sleep and bring your enthusiasm!\n"
        ),
    ),
    ReminderKind.T_MINUS_2H: Template(
        kind=ReminderKind.T_MINUS_2H,
        subject="Starting Soon! {{workshopName}}",
        html_body=(
            "<h1>Starting in 2 Hours!</h1>\n"
            "<p>Hi {{attendeeName}},</p>\n"
            "<p>Your <strong>{{workshopName}}</strong> starts in just 2 hours!</p>\n"
            + _DETAILS_HTML
            + "\n<p>See you very soon!</p>"
        ),
        text_body=(
            "Hi {{attendeeName}},\n\n"
            "Your {{workshopName}} starts in just 2 hours!\n\n"
            + _DETAILS_TEXT
            + "\nSee you very soon!\n"
        ),
    ),
    ReminderKind.T_PLUS_2H: Template(
        kind=ReminderKind.T_PLUS_2H,
        subject="Thank You for Joining {{workshopName}}!",
        html_body=(
            "<h1>You Did It!</h1>\n"
            "<p>Hi {{attendeeName}},</p>\n"
            "<p>Thank you for being part of <strong>{{workshopName}}</strong>!</p>\n"
            "<p>We'd love to hear your feedback. Just reply to this email.</p>"
        ),
        text_body=(
            "Hi {{attendeeName}},\n\n"
            "Thank you for being part of {{workshopName}}!\n\n"
            "We'd love to hear your feedback. Just reply to this email.\n"
        ),
    ),
}


def render(template_field: str, context: Mapping[str, object]) -> str:
    """Substitute ``{{key}}`` placeholders in one template field."""

    def _conditional(match: re.Match) -> str:
        return match.group(2) if context.get(match.group(1)) else ""

    def _placeholder(match: re.Match) -> str:
        value = context.get(match.group(1))
        return match.group(0) if value is None else str(value)

    result = _CONDITIONAL.sub(_conditional, template_field)
    return _PLACEHOLDER.sub(_placeholder, result)


def format_workshop_date(start: datetime, tz: tzinfo) -> str:
    """``Thursday, July 10, 2025``"""
    local = start.astimezone(tz)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_workshop_time(start: datetime, tz: tzinfo) -> str:
    """``9:00 AM``"""
    local = start.astimezone(tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local:%M} {local:%p}"


def build_context(booking: BookingContext, tz: tzinfo) -> dict[str, str | None]:
    """Rendering context for a booking; optional fields map to None."""
    return {
        "attendeeName": booking.recipient_name or DEFAULT_ATTENDEE_NAME,
        "workshopName": booking.workshop_name or DEFAULT_WORKSHOP_NAME,
        "workshopDate": format_workshop_date(booking.workshop_start, tz),
        "workshopTime": format_workshop_time(booking.workshop_start, tz),
        "location": booking.location,
        "zoomLink": booking.zoom_link,
    }


class TemplateCatalog:
    """Read-only mapping of reminder kind to Template.

    Seeded once at construction (with the built-in defaults when no
    templates are given); kinds without an active seeded template fall
    back to the built-in default for that kind.
    """

    def __init__(self, templates: Iterable[Template] | None = None) -> None:
        self._templates: dict[ReminderKind, Template] = {}
        if templates is None:
            templates = DEFAULT_TEMPLATES.values()
        for template in templates:
            if template.is_active:
                self._templates[template.kind] = template

    def get_template(self, kind: ReminderKind) -> Template:
        template = self._templates.get(kind)
        if template is None:
            logger.warning("No template seeded for kind, using default", kind=kind.value)
            return DEFAULT_TEMPLATES[kind]
        return template

    def render(self, template_field: str, context: Mapping[str, object]) -> str:
        return render(template_field, context)

    def render_message(
        self, kind: ReminderKind, context: Mapping[str, object]
    ) -> RenderedMessage:
        template = self.get_template(kind)
        return RenderedMessage(
            subject=render(template.subject, context),
            html_body=render(template.html_body, context),
            text_body=render(template.text_body, context),
        )
