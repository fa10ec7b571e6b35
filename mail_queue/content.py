"""Notification content rendered from Jinja2 templates.

Templates live in ``mail_queue/templates`` and are rendered with
``StrictUndefined`` so that a missing variable is an error rather than a
blank. Any rendering error is logged and replaced by :meth:`ContentGenerator.fallback`,
which builds a minimal HTML body from whatever context is available and
never raises.
"""

from html import escape
from typing import Any, Dict, NamedTuple, Optional

import jinja2

from .logger import get_logger
from .models import ContentKind

PRE_EVENT_CHECKLIST = (
    "Comfortable walking shoes with good grip",
    "Weather-appropriate clothing (layers recommended)",
    "Water bottle (minimum 1 liter)",
    "Small backpack for personal items",
    "Fully charged mobile phone",
    "Government-issued photo ID",
    "Copy of medical certificate",
    "Any personal medications",
    "Sunscreen and hat (for outdoor hunts)",
    "Emergency contact information",
    "Positive attitude and team spirit!",
)

# (kind, addressed to a team member) -> template file
TEMPLATE_NAMES = {
    (ContentKind.REGISTRATION_CONFIRMATION, False): "registration_confirmation.html",
    (ContentKind.REGISTRATION_CONFIRMATION, True): "team_member_confirmation.html",
    (ContentKind.APPLICATION_APPROVAL, False): "application_approval.html",
    (ContentKind.APPLICATION_APPROVAL, True): "team_application_approval.html",
    (ContentKind.CANCELLATION, False): "individual_cancellation.html",
    (ContentKind.CANCELLATION, True): "team_cancellation.html",
    (ContentKind.ADMIN_NOTIFICATION, False): "admin_notification.html",
    (ContentKind.ADMIN_NOTIFICATION, True): "admin_notification.html",
}

SUBJECT_TITLES = {
    (ContentKind.REGISTRATION_CONFIRMATION, False): "Registration Confirmed",
    (ContentKind.REGISTRATION_CONFIRMATION, True): "Registration Confirmed",
    (ContentKind.APPLICATION_APPROVAL, False): "Application Approved",
    (ContentKind.APPLICATION_APPROVAL, True): "Team Application Approved",
    (ContentKind.CANCELLATION, False): "Registration Cancelled",
    (ContentKind.CANCELLATION, True): "Team Registration Cancelled",
}


class RenderedContent(NamedTuple):
    subject: str
    body: str


def default_environment() -> jinja2.Environment:
    """Return the environment loading the templates shipped with the package."""
    return jinja2.Environment(
        loader=jinja2.PackageLoader("mail_queue", "templates"),
        autoescape=jinja2.select_autoescape(["html", "xml"]),
        undefined=jinja2.StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _lookup(obj: Any, *path: str) -> Any:
    """Walk attributes or mapping keys, returning ``None`` on the first miss."""
    for name in path:
        if obj is None:
            return None
        if isinstance(obj, dict):
            obj = obj.get(name)
        else:
            obj = getattr(obj, name, None)
    return obj


class ContentGenerator:
    """Render subject and HTML body for each notification kind.

    ``context`` is a mapping carrying at least ``registration``; team
    variants also receive ``member`` (the addressed team member) and
    ``team_leader``.
    """

    def __init__(
        self,
        company_name: str = "Treasure Hunt Adventures",
        support_email: str = "support@localhost",
        base_url: str = "http://localhost:8080",
        env: Optional[jinja2.Environment] = None,
    ):
        self.company_name = company_name
        self.support_email = support_email
        self.base_url = base_url.rstrip("/")
        self.env = env or default_environment()
        self.logger = get_logger("content")

    @staticmethod
    def _is_team(kind: ContentKind, context: Dict[str, Any]) -> bool:
        if kind == ContentKind.CANCELLATION:
            return bool(_lookup(context, "registration", "team_name"))
        return context.get("member") is not None

    def subject_for(self, kind: ContentKind, context: Dict[str, Any]) -> str:
        kind = ContentKind(kind)
        registration = context.get("registration")
        if kind == ContentKind.ADMIN_NOTIFICATION:
            who = _lookup(registration, "team_name") or _lookup(registration, "full_name")
            return f"New Registration: {who or 'unknown registrant'}"
        if kind == ContentKind.CAMPAIGN:
            return f"News from {self.company_name}"
        title = SUBJECT_TITLES[(kind, self._is_team(kind, context))]
        plan_name = _lookup(registration, "plan", "name")
        return f"{title} - {plan_name}" if plan_name else title

    def _template_vars(self, context: Dict[str, Any]) -> Dict[str, Any]:
        registration = context["registration"]
        values = {
            "company_name": self.company_name,
            "support_email": self.support_email,
            "base_url": self.base_url,
            "registration": registration,
            "plan": registration.plan,
            "registration_number": registration.registration_number,
            "team_name": registration.team_name,
            "team_members": registration.team_members,
            "team_leader": registration.team_leader,
            "member": None,
            "checklist": PRE_EVENT_CHECKLIST,
            "admin_registrations_url": f"{self.base_url}/admin/registrations",
            "registration_details_url": f"{self.base_url}/admin/registrations/{registration.id}",
        }
        values.update(context)
        return values

    def render(self, kind: ContentKind, context: Dict[str, Any]) -> RenderedContent:
        """Render ``kind`` for ``context``, falling back to minimal content on error."""
        try:
            kind = ContentKind(kind)
            template_name = TEMPLATE_NAMES[(kind, self._is_team(kind, context))]
            template = self.env.get_template(template_name)
            body = template.render(**self._template_vars(context))
            return RenderedContent(self.subject_for(kind, context), body)
        except Exception as exc:
            self.logger.warning("Rendering %s failed, using fallback content: %s", kind, exc)
            return self.fallback(kind, context)

    def fallback(self, kind: Any, context: Optional[Dict[str, Any]]) -> RenderedContent:
        """Return minimal content carrying name, reference number and plan name."""
        context = context if isinstance(context, dict) else {}
        registration = context.get("registration")
        member = context.get("member")
        name = (
            _lookup(member, "full_name")
            or _lookup(registration, "full_name")
            or context.get("recipient_name")
            or "Participant"
        )
        reference = (
            _lookup(registration, "registration_number")
            or context.get("reference_id")
            or "N/A"
        )
        plan_name = _lookup(registration, "plan", "name") or context.get("plan_name") or "your event"
        team_name = _lookup(registration, "team_name")

        try:
            subject = self.subject_for(kind, context)
        except (KeyError, ValueError, TypeError):
            subject = f"Notification from {self.company_name}"

        parts = [
            "<!DOCTYPE html>",
            f"<html><head><meta charset='UTF-8'><title>{escape(subject)}</title></head>",
            "<body style='font-family: Arial, sans-serif; line-height: 1.6; color: #333;'>",
            "<div style='max-width: 600px; margin: 0 auto; padding: 20px;'>",
            f"<h2>{escape(subject)}</h2>",
            f"<p>Dear {escape(str(name))},</p>",
            f"<p>This message concerns your registration for <strong>{escape(str(plan_name))}</strong>.</p>",
        ]
        if team_name:
            parts.append(f"<p>Team Name: <strong>{escape(str(team_name))}</strong></p>")
        parts.extend(
            [
                f"<p>Registration Number: <strong>{escape(str(reference))}</strong></p>",
                f"<p>For any question contact us at {escape(self.support_email)}.</p>",
                f"<p>Best regards,<br>{escape(self.company_name)}</p>",
                "</div></body></html>",
            ]
        )
        return RenderedContent(subject, "".join(parts))
