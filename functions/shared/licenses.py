"""
License status synchronization.

Mirrors a customer's subscription state onto every license the customer
owns. Each license is one independent write, so re-running a sync after a
crash or redelivery converges on the same state.
"""

import logging
from typing import Optional

from .dynamo import RecordStore

logger = logging.getLogger(__name__)


class LicenseSynchronizer:
    """Applies status transitions to license records."""

    def __init__(self, store: RecordStore):
        self.store = store

    def update_license_status(self, license_id: str, status: str, metadata: Optional[dict] = None) -> None:
        """Apply status + metadata to exactly one license, stamping updatedAt."""
        self.store.update_license_status(license_id, status, metadata)

    def sync_customer_licenses(self, user_id: str, status: str, metadata: Optional[dict] = None) -> int:
        """
        Apply a status to all licenses owned by a customer.

        Args:
            user_id: Owning customer's user id
            status: New license status (active, suspended, canceled, or a
                mirrored subscription status)
            metadata: Extra fields written to every license

        Returns:
            Number of licenses updated
        """
        updated = 0
        for link in self.store.get_customer_licenses(user_id):
            license_id = link.get("keygenLicenseId") or link.get("SK", "").split("#", 1)[-1]
            if not license_id:
                logger.warning(f"License link without id for user {user_id}: {link.get('SK')}")
                continue

            self.update_license_status(license_id, status, metadata)
            updated += 1
            logger.info(
                f"License {license_id} -> {status}",
                extra={"license_id": license_id, "user_id": user_id, "status": status},
            )

        return updated
