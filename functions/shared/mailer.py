"""
Outbound email through SES.
"""

import logging
import re
import time
from typing import Iterable, Optional

from .aws_clients import get_ses
from .constants import FROM_EMAIL, SES_VERIFICATION_BATCH_SIZE
from .errors import ConfigurationError
from .logging_utils import log_external_call
from .types import EmailContent

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS = "NotFound"

_MASK_RE = re.compile(r"^(.{1,2})[^@]*@")


def mask_email(email: Optional[str]) -> str:
    """Mask an address for logs: testuser@example.com -> te***@example.com."""
    if not email:
        return "[no-email]"
    if "@" not in email:
        return "[invalid-email]"
    return _MASK_RE.sub(r"\1***@", email, count=1)


class Mailer:
    """Thin wrapper over the SES client used by every sender."""

    def __init__(self, ses_client=None, from_email: str = FROM_EMAIL):
        if not from_email:
            raise ConfigurationError("SES_FROM_EMAIL is not set")
        self.ses = ses_client if ses_client is not None else get_ses()
        self.from_email = from_email

    def send(self, to: str, content: EmailContent) -> str:
        """
        Send one email.

        Returns:
            SES message id

        Raises:
            botocore.exceptions.ClientError: SES rejected the message
        """
        start = time.monotonic()
        try:
            response = self.ses.send_email(
                Source=self.from_email,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": content["subject"]},
                    "Body": {
                        "Html": {"Data": content["html"]},
                        "Text": {"Data": content["text"]},
                    },
                },
            )
        except Exception as e:
            log_external_call(logger, "ses", "SendEmail", False, (time.monotonic() - start) * 1000, str(e))
            raise

        log_external_call(logger, "ses", "SendEmail", True, (time.monotonic() - start) * 1000)
        return response.get("MessageId", "")

    def get_verification_statuses(self, emails: Iterable[str]) -> dict[str, str]:
        """
        Look up SES verification status for many addresses.

        Addresses SES does not know about come back as "NotFound".
        Errors from SES propagate.
        """
        unique = list(dict.fromkeys(e for e in emails if e))
        statuses: dict[str, str] = {}

        for i in range(0, len(unique), SES_VERIFICATION_BATCH_SIZE):
            chunk = unique[i : i + SES_VERIFICATION_BATCH_SIZE]
            response = self.ses.get_identity_verification_attributes(Identities=chunk)
            attributes = response.get("VerificationAttributes", {})
            for email in chunk:
                statuses[email] = attributes.get(email, {}).get("VerificationStatus", NOT_FOUND_STATUS)

        return statuses

    def get_verification_status(self, email: str) -> str:
        return self.get_verification_statuses([email]).get(email, NOT_FOUND_STATUS)
