"""
Module containing the validation proofs and the challenge orchestrator driving the
authorizations of a pending order to completion
"""
import abc
import logging
import os
import time
from enum import Enum
from urllib.parse import urlunparse

import requests
from acme import errors

from acme_issuer.acme_requests import (ACMEChallengeType, ACMEConfigurationError,
                                       ACMEError, ACMEInvalidChallengeError,
                                       ACMERejectedError, ACMEStatus,
                                       ACMETransportError,
                                       ValidationTimeoutExceeded)
from acme_issuer.dns import (DNSError, DNSFailedQueryError,
                             txt_records_by_nameserver)
from acme_issuer.plugins import ValidationBackendError
from acme_issuer.polling import (PollingCancelledError, PollingTimeoutError,
                                 poll_until)

DNS_SERVERS = None  # intended to be used during testing
HTTP_VALIDATOR_PROXIES = {
    'http': os.getenv('HTTP_PROXY'),
    'https': os.getenv('HTTPS_PROXY'),
}
DEFAULT_DNS01_VALIDATION_TIMEOUT = 2.0
DEFAULT_HTTP01_VALIDATION_TIMEOUT = 2.0
DEFAULT_POLL_INTERVAL = 2.0
FAILED_AUTHORIZATION_STATUS = (ACMEStatus.INVALID, ACMEStatus.DEACTIVATED, ACMEStatus.EXPIRED, ACMEStatus.REVOKED)

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ACMEChallengeValidation(Enum):
    """Possible results of challenge validation"""
    VALID = 1
    INVALID = 2
    UNKNOWN = 3


class BaseProof(abc.ABC):
    """Base class of the proofs a validation backend publishes for an authorization"""
    def __init__(self, challenge_type, domain, challenge, validation):
        self.challenge_type = challenge_type
        self.domain = domain
        self.challenge = challenge
        self.validation = validation

    def save(self, file_name):
        """Persists the proof on disk"""
        with open(file_name, 'w', encoding='ascii') as proof_file:
            proof_file.write(self.validation)

    @abc.abstractmethod
    def validate(self, **kwargs):
        """Checks if the proof is already visible or not. Returns a member of ACMEChallengeValidation"""

    def __str__(self):
        return "Challenge type: {}".format(self.challenge_type.value)


class DNS01Proof(BaseProof):
    """TXT record proving control of a domain"""
    def __init__(self, domain, challenge, validation_domain_name, validation):
        super().__init__(ACMEChallengeType.DNS01, domain, challenge, validation)
        self.validation_domain_name = validation_domain_name

    @classmethod
    def from_challenge(cls, authorization, challenge, account_key):
        """Builds the proof for a dns-01 challenge snapshot"""
        return cls(domain=authorization.domain, challenge=challenge,
                   validation_domain_name=challenge.body.validation_domain_name(authorization.identifier),
                   validation=challenge.body.validation(account_key))

    def validate(self, **kwargs):
        logger.debug("Attempting to validate proof %s", self)
        results = txt_records_by_nameserver(self.validation_domain_name,
                                            nameservers=kwargs.get('dns_servers') or DNS_SERVERS,
                                            timeout=kwargs.get('timeout', DEFAULT_DNS01_VALIDATION_TIMEOUT))

        ret = ACMEChallengeValidation.VALID
        for nameserver, records in results.items():
            if isinstance(records, DNSFailedQueryError):
                result = ACMEChallengeValidation.UNKNOWN
            elif isinstance(records, DNSError) or self.validation not in records:
                result = ACMEChallengeValidation.INVALID
            else:
                continue
            # every lagging nameserver gets reported
            logger.warning("Nameserver %s doesn't serve proof %s yet (%s)", nameserver, self, result.name)
            ret = result

        return ret

    def __str__(self):
        return '{}. {} TXT {}'.format(super().__str__(), self.validation_domain_name, self.validation)


class HTTP01Proof(BaseProof):
    """Key authorization served over plain HTTP"""
    def __init__(self, domain, challenge, path, validation):
        super().__init__(ACMEChallengeType.HTTP01, domain, challenge, validation)
        self.path = path
        self.file_name = path.split('/')[-1]

    @classmethod
    def from_challenge(cls, authorization, challenge, account_key):
        """Builds the proof for an http-01 challenge snapshot"""
        return cls(domain=authorization.domain, challenge=challenge, path=challenge.body.path,
                   validation=challenge.body.validation(account_key))

    def validate(self, **kwargs):
        logger.debug("Attempting to validate proof %s", self)
        timeout = kwargs.get('timeout', DEFAULT_HTTP01_VALIDATION_TIMEOUT)
        server = kwargs.get('server', self.domain)
        port = kwargs.get('port', 80)

        headers = {'Host': self.domain}
        url = urlunparse((
            'http',
            "{}:{}".format(server, port),
            self.path,
            '',
            '',
            ''))
        try:
            response = requests.get(url, headers=headers, proxies=HTTP_VALIDATOR_PROXIES, timeout=timeout)
            response.raise_for_status()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
            return ACMEChallengeValidation.UNKNOWN
        except (requests.exceptions.HTTPError, requests.exceptions.TooManyRedirects):
            return ACMEChallengeValidation.INVALID

        if response.text == self.validation:
            return ACMEChallengeValidation.VALID

        return ACMEChallengeValidation.INVALID

    def __str__(self):
        return '{}. http://{}{}: {}'.format(super().__str__(), self.domain, self.path, self.validation)


# tls-alpn-01 is a known challenge type but no backend is able to publish it
PROOF_BUILDERS = {
    ACMEChallengeType.DNS01: DNS01Proof.from_challenge,
    ACMEChallengeType.HTTP01: HTTP01Proof.from_challenge,
    ACMEChallengeType.TLSALPN01: None,
}


class ValidationStep:
    """Authorization of a pending order together with the challenge, backend and proof used to satisfy it"""
    def __init__(self, authorization, challenge, backend, proof):
        self.authorization = authorization
        self.challenge = challenge
        self.backend = backend
        self.proof = proof

    @property
    def domain(self):
        """Domain being validated"""
        return self.authorization.domain

    @property
    def needs_publishing(self):
        """False if the ACME directory is already processing (or has validated) the challenge"""
        return self.challenge.status is ACMEStatus.PENDING


class ChallengeOrchestrator:
    """
    Drives every not yet valid authorization of a pending order through the validation backends
    and polls the ACME directory till all of them are valid, one of them fails or the
    validation timeout expires. Domains are handled sequentially, in the order they were requested.
    """
    def __init__(self, authorization_store, acme_client, account_key, backends, *, dns_sleep, validation_timeout,
                 poll_interval=DEFAULT_POLL_INTERVAL, cancel=None, sleep=time.sleep, clock=time.monotonic):
        if not backends:
            raise ACMEConfigurationError('At least one validation backend is required', stage='validation')
        self.authorization_store = authorization_store
        self.acme_client = acme_client
        self.account_key = account_key
        self.backends = list(backends)
        self.dns_sleep = dns_sleep
        self.validation_timeout = validation_timeout
        self.poll_interval = poll_interval
        self.cancel = cancel
        self.sleep = sleep
        self.clock = clock

    def backend_for(self, order, domain):
        """Backends map one to one to the requested domains, the last one serving any remaining domain"""
        try:
            index = order.domains.index(domain.lower())
        except ValueError:
            index = len(self.backends) - 1

        return self.backends[min(index, len(self.backends) - 1)]

    def select_challenge(self, order, authorization, backend):
        """Picks the challenge matching the backend challenge type and builds its proof"""
        challenge = authorization.challenge_for(backend.challenge_type)
        if challenge is None:
            offered = ', '.join(str(challenge.typ) for challenge in authorization.challenges)
            raise ACMEConfigurationError('No {} challenge offered (offered: {}) for plugin {}'.format(
                backend.challenge_type.value, offered or 'none', backend.name),
                domain=authorization.domain, order_id=order.uri, stage='validation')

        build_proof = PROOF_BUILDERS.get(challenge.challenge_type)
        if build_proof is None:
            raise ACMEConfigurationError('Unsupported challenge type {}'.format(challenge.typ),
                                         domain=authorization.domain, order_id=order.uri, stage='validation')

        return challenge, build_proof(authorization, challenge, self.account_key)

    def plan(self, order, authorizations):
        """
        Returns a ValidationStep for every authorization that isn't valid yet.
        Nothing is published here so configuration problems are reported before any change happens
        """
        steps = []
        for authorization in authorizations:
            if authorization.status is ACMEStatus.VALID:
                logger.debug("Authorization for %s is already valid", authorization.domain)
                continue
            if authorization.status in FAILED_AUTHORIZATION_STATUS:
                raise ACMEInvalidChallengeError('Authorization is {}: {}'.format(
                    authorization.status.value, authorization.error or 'no reason given'),
                    domain=authorization.domain, order_id=order.uri, stage='validation')

            backend = self.backend_for(order, authorization.domain)
            challenge, proof = self.select_challenge(order, authorization, backend)
            steps.append(ValidationStep(authorization, challenge, backend, proof))

        return steps

    def _answer(self, order, step):
        response = step.challenge.body.response(self.account_key)
        try:
            self.acme_client.answer_challenge(step.challenge.body, response)
        except errors.Error as answer_error:
            raise ACMERejectedError('Unable to answer challenge: {}'.format(answer_error), domain=step.domain,
                                    order_id=order.uri, stage='validation') from answer_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to answer challenge', domain=step.domain,
                                     order_id=order.uri, stage='validation') from request_error

    def _prevalidate(self, steps):
        for step in steps:
            if not step.backend.prevalidate:
                continue
            result = step.proof.validate(**step.backend.validation_params)
            if result is not ACMEChallengeValidation.VALID:
                logger.warning("Proof for %s is not visible yet (%s): %s", step.domain, result.name, step.proof)

    def _cleanup(self, steps):
        for step in steps:
            try:
                step.backend.cleanup(step.domain, step.proof)
            except (ValidationBackendError, OSError):
                logger.exception("Unable to clean up proof for %s using plugin %s", step.domain, step.backend.name)

    def _poll(self, order):
        def is_terminal(authorizations):
            return (all(authz.status is ACMEStatus.VALID for authz in authorizations) or
                    any(authz.status in FAILED_AUTHORIZATION_STATUS for authz in authorizations))

        try:
            authorizations = poll_until(lambda: self.authorization_store.get_authorizations(order), is_terminal,
                                        interval=self.poll_interval, timeout=self.validation_timeout,
                                        cancel=self.cancel, clock=self.clock, sleep=self.sleep)
        except PollingTimeoutError as timeout_error:
            pending = [authz.domain for authz in (timeout_error.last_result or ())
                       if authz.status is not ACMEStatus.VALID]
            raise ValidationTimeoutExceeded('Authorizations not validated after {}s: {}'.format(
                self.validation_timeout, ', '.join(pending) or 'unknown'),
                order_id=order.uri, stage='validation') from timeout_error

        for authorization in authorizations:
            if authorization.status in FAILED_AUTHORIZATION_STATUS:
                logger.error("ACME directory has rejected the challenge for %s", authorization.domain)
                raise ACMEInvalidChallengeError('Authorization is {}: {}'.format(
                    authorization.status.value, authorization.error or 'no reason given'),
                    domain=authorization.domain, order_id=order.uri, stage='validation')

        return authorizations

    def validate(self, order):
        """
        Satisfies every authorization of order. Returns the final (all valid) authorizations.
        Published proofs are always cleaned up, cleanup failures are only logged
        """
        steps = self.plan(order, self.authorization_store.get_authorizations(order))
        if not steps:
            logger.info("Every authorization of order %s is already valid", order.uri)
            return ()

        published = []
        try:
            for step in steps:
                if not step.needs_publishing:
                    logger.info("Challenge for %s is already %s, skipping it", step.domain,
                                step.challenge.status.value)
                    continue
                logger.info("Publishing %s proof for %s using plugin %s", step.challenge.typ, step.domain,
                            step.backend.name)
                published.append(step)
                try:
                    step.backend.publish(step.domain, step.proof)
                except (ValidationBackendError, OSError) as backend_error:
                    raise ACMEError('Plugin {} failed to publish the proof: {}'.format(step.backend.name,
                                                                                       backend_error),
                                    domain=step.domain, order_id=order.uri, stage='publish') from backend_error

            if published:
                logger.info("Waiting %s seconds for the proofs to propagate", self.dns_sleep)
                self.sleep(self.dns_sleep)
                if self.cancel is not None and self.cancel.is_set():
                    raise PollingCancelledError('Cancelled while waiting for proof propagation')
                self._prevalidate(published)

                for step in published:
                    try:
                        step.backend.notify_ready(step.proof)
                    except (ValidationBackendError, OSError) as backend_error:
                        raise ACMEError('Plugin {} failed to prepare the proof: {}'.format(step.backend.name,
                                                                                           backend_error),
                                        domain=step.domain, order_id=order.uri, stage='publish') from backend_error
                    self._answer(order, step)

            authorizations = self._poll(order)
        finally:
            self._cleanup(published)

        logger.info("Every authorization of order %s has been validated", order.uri)
        return authorizations
