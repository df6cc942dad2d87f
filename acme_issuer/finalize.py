"""
Module containing the finalization driver: submits the CSR of an order once every authorization
is valid and waits for the ACME directory to issue the certificate
"""
import logging
import time

import requests
from acme import errors

from acme_issuer.acme_requests import (ACMEChallengeNotValidatedError,
                                       ACMEIssuanceError, ACMERejectedError,
                                       ACMEStatus, ACMETransportError,
                                       IssueTimeoutExceeded)
from acme_issuer.polling import PollingTimeoutError, poll_until

DEFAULT_POLL_INTERVAL = 2.0

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class FinalizationDriver:
    """Walks an order from pending/ready through processing to valid"""
    def __init__(self, order_store, authorization_store, acme_client, *, issue_timeout,
                 poll_interval=DEFAULT_POLL_INTERVAL, cancel=None, sleep=time.sleep, clock=time.monotonic):
        self.order_store = order_store
        self.authorization_store = authorization_store
        self.acme_client = acme_client
        self.issue_timeout = issue_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel
        self.sleep = sleep
        self.clock = clock

    def _issuance_error(self, order):
        return ACMEIssuanceError('Order is invalid: {}'.format(order.error or 'no reason given'),
                                 domain=order.main_domain, order_id=order.uri, stage='finalize')

    def _check_authorizations(self, order):
        pending = [authz.domain for authz in self.authorization_store.get_authorizations(order)
                   if authz.status is not ACMEStatus.VALID]
        if pending:
            raise ACMEChallengeNotValidatedError('Authorizations not valid yet: {}'.format(', '.join(pending)),
                                                 domain=order.main_domain, order_id=order.uri, stage='finalize')

    def _submit(self, order):
        csr_pem = self.order_store.load_csr_pem(order)
        logger.info("Finalizing order %s", order.uri)
        try:
            self.acme_client.submit_finalization(order.uri, order.finalize_url, csr_pem)
        except errors.Error as finalize_error:
            raise ACMERejectedError('Unable to finalize order: {}'.format(finalize_error), domain=order.main_domain,
                                    order_id=order.uri, stage='finalize') from finalize_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to finalize order', domain=order.main_domain,
                                     order_id=order.uri, stage='finalize') from request_error

    def _poll(self, order):
        try:
            return poll_until(lambda: self.order_store.refresh_order(order),
                              lambda refreshed: refreshed.status in (ACMEStatus.VALID, ACMEStatus.INVALID),
                              interval=self.poll_interval, timeout=self.issue_timeout,
                              cancel=self.cancel, clock=self.clock, sleep=self.sleep)
        except PollingTimeoutError as timeout_error:
            raise IssueTimeoutExceeded('Certificate not issued after {}s'.format(self.issue_timeout),
                                       domain=order.main_domain, order_id=order.uri,
                                       stage='finalize') from timeout_error

    def finalize(self, order):
        """
        Returns the valid order snapshot. The order is refreshed first, pending orders are only
        finalized when all their authorizations are valid and processing ones are just polled
        """
        order = self.order_store.refresh_order(order)

        if order.status is ACMEStatus.VALID:
            logger.info("Order %s is already valid", order.uri)
            return order
        if order.status is ACMEStatus.INVALID:
            raise self._issuance_error(order)

        if order.status is ACMEStatus.PENDING:
            self._check_authorizations(order)
            self._submit(order)
        elif order.status is ACMEStatus.READY:
            self._submit(order)
        elif order.status is ACMEStatus.PROCESSING:
            logger.info("Order %s is already being processed, waiting for the certificate", order.uri)
        else:
            raise ACMERejectedError('Unable to finalize an order with status {}'.format(order.status.value),
                                    domain=order.main_domain, order_id=order.uri, stage='finalize')

        order = self._poll(order)
        if order.status is ACMEStatus.INVALID:
            logger.error("ACME directory refused to issue the certificate for order %s", order.uri)
            raise self._issuance_error(order)

        logger.info("Order %s has been issued", order.uri)
        return order
