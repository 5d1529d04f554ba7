"""
Email templates for lifecycle notifications.

Each template takes the denormalized fields of an event record and returns
{subject, html, text}. Values interpolated into HTML are escaped.
"""

from html import escape
from typing import Any, Callable
from urllib.parse import quote

from .constants import APP_URL, COMPANY_NAME, MAX_PAYMENT_FAILURES, PRODUCT_NAME
from .errors import TemplateNotFoundError
from .events import LifecycleEvent
from .types import EmailContent

TEMPLATE_NAMES = [
    "welcome",
    "licenseDelivery",
    "paymentFailed",
    "trialEnding",
    "reactivation",
    "cancellation",
    "licenseRevoked",
    "licenseSuspended",
    "winBack30",
    "winBack90",
    "enterpriseInvite",
]

EVENT_TYPE_TO_TEMPLATE = {
    LifecycleEvent.LICENSE_CREATED: "licenseDelivery",
    LifecycleEvent.LICENSE_REVOKED: "licenseRevoked",
    LifecycleEvent.LICENSE_SUSPENDED: "licenseSuspended",
    LifecycleEvent.CUSTOMER_CREATED: "welcome",
    LifecycleEvent.SUBSCRIPTION_CANCELLED: "cancellation",
    LifecycleEvent.SUBSCRIPTION_REACTIVATED: "reactivation",
    LifecycleEvent.PAYMENT_FAILED: "paymentFailed",
    LifecycleEvent.TRIAL_ENDING: "trialEnding",
    LifecycleEvent.TEAM_INVITE_CREATED: "enterpriseInvite",
}

DEFAULT_DISCOUNT_CODE = "WINBACK20"


def template_for_event(event_type: str | None) -> str | None:
    """Template name for an event type, or None when no email is mapped."""
    try:
        return EVENT_TYPE_TO_TEMPLATE.get(LifecycleEvent(event_type))
    except ValueError:
        return None


class EmailTemplates:
    """Renders templates with environment-specific links and names."""

    def __init__(
        self,
        app_url: str = APP_URL,
        company_name: str = COMPANY_NAME,
        product_name: str = PRODUCT_NAME,
    ):
        self.app_url = app_url.rstrip("/")
        self.company_name = company_name
        self.product_name = product_name
        self._renderers: dict[str, Callable[[dict], EmailContent]] = {
            "welcome": self._welcome,
            "licenseDelivery": self._license_delivery,
            "paymentFailed": self._payment_failed,
            "trialEnding": self._trial_ending,
            "reactivation": self._reactivation,
            "cancellation": self._cancellation,
            "licenseRevoked": self._license_revoked,
            "licenseSuspended": self._license_suspended,
            "winBack30": self._winback_30,
            "winBack90": self._winback_90,
            "enterpriseInvite": self._enterprise_invite,
        }

    @property
    def names(self) -> list[str]:
        return list(self._renderers)

    def __contains__(self, template_name: str) -> bool:
        return template_name in self._renderers

    def render(self, template_name: str, data: dict[str, Any]) -> EmailContent:
        """
        Render a template.

        Raises:
            TemplateNotFoundError: unknown template name
        """
        renderer = self._renderers.get(template_name)
        if renderer is None:
            raise TemplateNotFoundError(template_name)
        return renderer({k: v for k, v in data.items() if v is not None})

    # ------------------------------------------------------------------

    def _layout(self, subject: str, heading: str, paragraphs: list[str], cta_label: str, cta_url: str) -> EmailContent:
        body = "\n".join(f"<p>{escape(p)}</p>" for p in paragraphs)
        html = (
            "<!DOCTYPE html>\n<html>\n<head><meta charset=\"utf-8\"></head>\n<body>\n"
            f"<h1>{escape(heading)}</h1>\n{body}\n"
            f"<p><a href=\"{escape(cta_url, quote=True)}\">{escape(cta_label)}</a></p>\n"
            f"<hr>\n<p>{escape(self.company_name)}</p>\n</body>\n</html>"
        )
        text = "\n\n".join([heading, *paragraphs, f"{cta_label}: {cta_url}", self.company_name])
        return {"subject": subject, "html": html, "text": text}

    def _welcome(self, data: dict) -> EmailContent:
        session_id = data.get("sessionId")
        url = f"{self.app_url}/welcome?session_id={quote(str(session_id))}" if session_id else f"{self.app_url}/portal"
        return self._layout(
            f"Welcome to {self.product_name}!",
            f"Welcome to {self.product_name}!",
            [
                "Thanks for signing up. Your account is ready.",
                "Your license key will be delivered in a separate email.",
            ],
            "Go to Portal",
            url,
        )

    def _license_delivery(self, data: dict) -> EmailContent:
        plan = data.get("planName") or "subscription"
        return self._layout(
            f"Your {self.product_name} License Key",
            f"Your {self.product_name} License Key",
            [
                f"Your {plan} is now active. Here is your license key:",
                str(data.get("licenseKey", "")),
                f"Paste it into the {self.product_name} settings in VS Code and reload.",
            ],
            "Go to Portal",
            f"{self.app_url}/portal",
        )

    def _payment_failed(self, data: dict) -> EmailContent:
        paragraphs = [f"We were unable to process your payment for {self.product_name}."]
        if data.get("attemptCount"):
            paragraphs.append(f"This is attempt {data['attemptCount']} of {MAX_PAYMENT_FAILURES}.")
        if data.get("retryDate"):
            paragraphs.append(f"We'll automatically retry on {data['retryDate']}.")
        paragraphs.append("Please update your payment method to avoid service interruption.")
        return self._layout(
            f"Action Required: Payment Failed for {self.product_name}",
            "Payment Failed",
            paragraphs,
            "Update Payment Method",
            f"{self.app_url}/portal/billing",
        )

    def _trial_ending(self, data: dict) -> EmailContent:
        days = data.get("daysRemaining", 3)
        return self._layout(
            f"Your {self.product_name} trial ends in {days} days",
            "Trial Ending Soon",
            [
                f"Your {self.product_name} trial ends in {days} days.",
                "Subscribe now to keep using every feature you've been relying on.",
            ],
            "View Plans",
            f"{self.app_url}/pricing",
        )

    def _reactivation(self, data: dict) -> EmailContent:
        return self._layout(
            f"Your {self.product_name} Subscription is Active Again!",
            "Welcome Back!",
            [
                f"Your {self.product_name} subscription has been reactivated.",
                "Your license is active and ready to use.",
            ],
            "Go to Portal",
            f"{self.app_url}/portal",
        )

    def _cancellation(self, data: dict) -> EmailContent:
        until = data.get("accessUntil") or "the end of your billing period"
        return self._layout(
            f"Your {self.product_name} Subscription Has Been Cancelled",
            "Subscription Cancelled",
            [
                f"Your {self.product_name} subscription has been cancelled.",
                f"You'll continue to have access until {until}.",
                "Changed your mind? You can reactivate anytime from your portal.",
            ],
            "Reactivate Subscription",
            f"{self.app_url}/portal",
        )

    def _license_revoked(self, data: dict) -> EmailContent:
        org = data.get("organizationName")
        by = f" by {org}" if org else ""
        return self._layout(
            f"Your {self.product_name} License Has Been Revoked",
            "License Revoked",
            [
                f"Your {self.product_name} license has been revoked{by}.",
                "If you believe this is an error, contact your organization administrator or our support team.",
            ],
            "Contact Support",
            "mailto:support@hic-ai.com",
        )

    def _license_suspended(self, data: dict) -> EmailContent:
        return self._layout(
            f"Your {self.product_name} License Has Been Suspended",
            "License Suspended",
            [
                f"Your {self.product_name} license has been suspended.",
                "This may be due to a billing issue. Check your account status to resolve it.",
            ],
            "Check Account Status",
            f"{self.app_url}/portal/billing",
        )

    def _unsubscribe_line(self, data: dict) -> str:
        email = quote(str(data.get("email", "")))
        return f"Unsubscribe from win-back emails: {self.app_url}/unsubscribe?email={email}"

    def _winback_30(self, data: dict) -> EmailContent:
        return self._layout(
            f"We miss you! Come back to {self.product_name}",
            "We miss you!",
            [
                f"It's been 30 days since you cancelled your {self.product_name} subscription.",
                "Your account is still here whenever you're ready to come back.",
                self._unsubscribe_line(data),
            ],
            "Reactivate Now",
            f"{self.app_url}/pricing",
        )

    def _winback_90(self, data: dict) -> EmailContent:
        code = data.get("discountCode") or DEFAULT_DISCOUNT_CODE
        return self._layout(
            f"Special offer: 20% off {self.product_name}",
            "Special Offer Just For You",
            [
                f"It's been a while since you left {self.product_name}.",
                f"Use code {code} for 20% off your first 3 months back. The offer expires in 7 days.",
                self._unsubscribe_line(data),
            ],
            "Claim Your Discount",
            f"{self.app_url}/pricing?code={quote(str(code))}",
        )

    def _enterprise_invite(self, data: dict) -> EmailContent:
        inviter = data.get("inviterName") or "A teammate"
        org = data.get("organizationName") or "their organization"
        token = quote(str(data.get("inviteToken", "")))
        return self._layout(
            f"You've been invited to use {self.product_name}",
            "You're Invited!",
            [
                f"{inviter} has invited you to join {org}'s {self.product_name} team.",
                "This invitation expires in 7 days.",
            ],
            "Accept Invitation",
            f"{self.app_url}/invite/accept?token={token}",
        )
