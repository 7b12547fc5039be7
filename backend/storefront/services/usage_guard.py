# Overview: Service-layer check of discount usage ceilings before a discount is offered.

"""
Usage Guard

Answers "may this customer use this campaign once more?" by counting prior
DiscountUsage rows. The answer is advisory: the ledger store re-checks the
same ceilings inside the insert at commit time.

FAIL CLOSED: if the count cannot be read the answer is False and the
discount is simply not offered.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .ledger_store import UsageCeilingReached

if TYPE_CHECKING:
    from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class DiscountUsageExceeded(UsageCeilingReached):
    """Campaign usage ceiling already reached for this customer or overall."""


class UsageGuard:
    def __init__(self, store: "LedgerStore"):
        self.store = store

    def check(
        self,
        campaign_id: int,
        customer_id: int | None = None,
        *,
        max_per_customer: int | None = None,
        max_total: int | None = None,
    ) -> None:
        """Raise DiscountUsageExceeded if a ceiling has been reached."""
        if max_per_customer is None and max_total is None:
            limits = self.store.get_campaign_limits(campaign_id)
            if limits.is_unlimited:
                return
            max_per_customer = limits.max_per_customer
            max_total = limits.max_total

        if max_per_customer is not None and customer_id is not None:
            used = self.store.query_usage_count(campaign_id, customer_id)
            if used >= max_per_customer:
                raise DiscountUsageExceeded(
                    "Customer usage limit reached",
                    details={
                        "campaign_id": campaign_id,
                        "customer_id": customer_id,
                        "used": used,
                        "max_per_customer": max_per_customer,
                    },
                )

        if max_total is not None:
            used = self.store.query_usage_count(campaign_id)
            if used >= max_total:
                raise DiscountUsageExceeded(
                    "Campaign usage limit reached",
                    details={"campaign_id": campaign_id, "used": used, "max_total": max_total},
                )

    def is_usage_allowed(
        self,
        campaign_id: int,
        customer_id: int | None = None,
        *,
        max_per_customer: int | None = None,
        max_total: int | None = None,
    ) -> bool:
        try:
            self.check(
                campaign_id,
                customer_id,
                max_per_customer=max_per_customer,
                max_total=max_total,
            )
        except DiscountUsageExceeded as exc:
            logger.debug("Discount %s withheld: %s", campaign_id, exc)
            return False
        except Exception:
            logger.warning(
                "Usage check failed for campaign %s customer %s; withholding discount",
                campaign_id,
                customer_id,
                exc_info=True,
            )
            return False
        return True
