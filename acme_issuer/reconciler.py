"""
Module containing the order reconciliation policy: decides if the current order of a main domain
can be reused for a certificate request or if a new order must be created
"""
import collections
import logging
from datetime import datetime, timezone
from enum import Enum

from acme_issuer.acme_requests import ACMEStatus
from acme_issuer.orders import split_domains

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class NewOrderReason(Enum):
    """Reasons to create a new order instead of reusing the current one. Evaluated in this order"""
    FORCED = 'new order forced'
    NOT_FOUND = 'no existing order'
    INVALID = 'existing order is invalid'
    RENEWAL_WINDOW = 'renewal window reached'
    EXPIRED = 'pending order expired'
    KEY_TYPE_CHANGED = 'key type changed'
    SANS_CHANGED = 'SANs changed'
    UNUSABLE_AFTER_REFRESH = 'existing order no longer usable'


ReconciledOrder = collections.namedtuple('ReconciledOrder', ('order', 'created', 'reason'))


def new_order_reason(existing, sans, key_type, force=False, now=None):
    """
    Returns the NewOrderReason preventing existing from being reused for the requested
    SANs (main domain excluded) and key type, or None if existing can be reused
    """
    if now is None:
        now = datetime.now(timezone.utc)

    if force:
        return NewOrderReason.FORCED
    if existing is None:
        return NewOrderReason.NOT_FOUND
    if existing.status is ACMEStatus.INVALID:
        return NewOrderReason.INVALID
    if existing.status is ACMEStatus.VALID and existing.renew_after is not None and now >= existing.renew_after:
        return NewOrderReason.RENEWAL_WINDOW
    if existing.status is ACMEStatus.PENDING and existing.expires is not None and now > existing.expires:
        return NewOrderReason.EXPIRED
    if key_type != existing.key_type:
        return NewOrderReason.KEY_TYPE_CHANGED
    if sorted(san.lower() for san in sans) != sorted(san.lower() for san in existing.sans):
        return NewOrderReason.SANS_CHANGED

    return None


class OrderReconciler:
    """Produces a server confirmed order for a domain list, reusing the current one when possible"""
    def __init__(self, order_store):
        self.order_store = order_store

    def _create(self, main_domain, sans, key_type, reason):
        logger.info("Creating a new order for %s: %s", main_domain, reason.value)
        order = self.order_store.create_order((main_domain,) + sans, key_type)
        return ReconciledOrder(order=order, created=True, reason=reason)

    def reconcile(self, domains, key_type, force=False, now=None):
        """Returns a ReconciledOrder for domains (first one being the main domain)"""
        main_domain, sans = split_domains(domains)
        existing = self.order_store.get_order(main_domain)

        reason = new_order_reason(existing, sans, key_type, force=force, now=now)
        if reason is not None:
            return self._create(main_domain, sans, key_type, reason)

        logger.info("Reusing order %s (%s) for %s", existing.uri, existing.status.value, main_domain)
        order = self.order_store.refresh_order(existing)
        if order.status in (ACMEStatus.INVALID, ACMEStatus.EXPIRED):
            logger.warning("Order %s became %s on the ACME directory", order.uri, order.status.value)
            return self._create(main_domain, sans, key_type, NewOrderReason.UNUSABLE_AFTER_REFRESH)

        return ReconciledOrder(order=order, created=False, reason=None)
