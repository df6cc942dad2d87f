"""
Module containing the order, authorization and challenge snapshots and the stores fetching them.

The ACME directory owns orders and authorizations and changes them asynchronously, so every
object here is an immutable snapshot: refreshing returns a new snapshot instead of mutating
the previous one.
"""
import collections
import json
import logging
import os
from datetime import datetime, timezone

import requests
from acme import challenges, errors

from acme_issuer.acme_requests import (ACMEChallengeType, ACMEConfigurationError,
                                       ACMEOrderNotFound, ACMERejectedError,
                                       ACMEStatus, ACMEStorageError,
                                       ACMETransportError)
from acme_issuer.x509 import (CertificateSigningRequest, X509Error,
                              generate_private_key)

ORDER_FILE = 'order.json'
REQUEST_KEY_FILE = 'request.key'
REQUEST_CSR_FILE = 'request.csr'

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


def split_domains(domains):
    """
    Returns (main_domain, sans) for the requested domain list.
    Names are lowercased, the first one is the main domain and duplicates are dropped
    """
    normalized = []
    for domain in domains:
        domain = domain.strip().lower()
        if domain and domain not in normalized:
            normalized.append(domain)

    if not normalized:
        raise ACMEConfigurationError('At least one domain is required', stage='order')

    return normalized[0], tuple(normalized[1:])


def _parse_datetime(value):
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_datetime(value):
    if value is None:
        return None
    return value.isoformat()


class Challenge(collections.namedtuple('Challenge', ('uri', 'typ', 'status', 'token', 'error', 'body'))):
    """Snapshot of one of the challenges offered by an authorization"""
    __slots__ = ()

    @property
    def challenge_type(self):
        """ACMEChallengeType member or None for challenge types unknown to this client"""
        return ACMEChallengeType.from_typ(self.typ)

    @classmethod
    def from_acme(cls, challb):
        """Builds the snapshot from an acme.messages.ChallengeBody"""
        chall = challb.chall
        if isinstance(chall, challenges.UnrecognizedChallenge):
            typ = chall.jobj.get('type')
        else:
            typ = chall.typ
        token = chall.encode('token') if hasattr(chall, 'token') else None
        error = str(challb.error) if challb.error is not None else None

        return cls(uri=challb.uri, typ=typ, status=ACMEStatus.from_acme(challb.status),
                   token=token, error=error, body=challb)


class Authorization(collections.namedtuple('Authorization',
                                           ('uri', 'status', 'identifier', 'wildcard', 'challenges'))):
    """Snapshot of the proof-of-control requirement for one domain of an order"""
    __slots__ = ()

    @property
    def domain(self):
        """Name the authorization was requested for, including the wildcard label"""
        if self.wildcard:
            return '*.' + self.identifier
        return self.identifier

    @property
    def error(self):
        """First server supplied error found in the challenges"""
        for challenge in self.challenges:
            if challenge.error is not None:
                return challenge.error
        return None

    def challenge_for(self, challenge_type):
        """Returns the first offered challenge of challenge_type or None"""
        for challenge in self.challenges:
            if challenge.challenge_type is challenge_type:
                return challenge
        return None

    @classmethod
    def from_acme(cls, authzr):
        """Builds the snapshot from an acme.messages.AuthorizationResource"""
        body = authzr.body
        return cls(
            uri=authzr.uri,
            status=ACMEStatus.from_acme(body.status),
            identifier=body.identifier.value,
            wildcard=bool(body.wildcard),
            challenges=tuple(Challenge.from_acme(challb) for challb in body.challenges),
        )


ORDER_FIELDS = ('uri', 'status', 'main_domain', 'sans', 'key_type', 'expires', 'renew_after',
                'certificate_url', 'authorization_urls', 'finalize_url', 'error')


class Order(collections.namedtuple('Order', ORDER_FIELDS)):
    """
    Snapshot of an ACME order. Server side fields are only ever replaced by a refresh,
    main_domain, sans, key_type and renew_after are recorded by this client.
    """
    __slots__ = ()

    @property
    def domains(self):
        """Main domain followed by the SANs"""
        return (self.main_domain,) + self.sans

    def updated_from(self, body):
        """Returns a new snapshot with the server side fields taken from an acme.messages.Order"""
        return self._replace(
            status=ACMEStatus.from_acme(body.status),
            expires=body.expires,
            certificate_url=body.certificate,
            authorization_urls=tuple(body.authorizations or ()),
            finalize_url=body.finalize,
            error=str(body.error) if body.error is not None else None,
        )

    @classmethod
    def from_acme(cls, uri, body, main_domain, sans, key_type):
        """Builds the snapshot of a freshly created order"""
        order = cls(uri=uri, status=ACMEStatus.UNKNOWN, main_domain=main_domain, sans=tuple(sans),
                    key_type=key_type, expires=None, renew_after=None, certificate_url=None,
                    authorization_urls=(), finalize_url=None, error=None)
        return order.updated_from(body)

    def to_json(self):
        """Serializes the snapshot as a JSON compatible dict"""
        ret = self._asdict()
        ret['status'] = self.status.value
        ret['sans'] = list(self.sans)
        ret['authorization_urls'] = list(self.authorization_urls)
        ret['expires'] = _format_datetime(self.expires)
        ret['renew_after'] = _format_datetime(self.renew_after)
        return ret

    @classmethod
    def from_json(cls, data):
        """Loads a snapshot serialized with to_json()"""
        return cls(
            uri=data['uri'],
            status=ACMEStatus.from_acme(data['status']),
            main_domain=data['main_domain'],
            sans=tuple(data.get('sans', ())),
            key_type=data['key_type'],
            expires=_parse_datetime(data.get('expires')),
            renew_after=_parse_datetime(data.get('renew_after')),
            certificate_url=data.get('certificate_url'),
            authorization_urls=tuple(data.get('authorization_urls', ())),
            finalize_url=data.get('finalize_url'),
            error=data.get('error'),
        )


class OrderStore:
    """
    Creates, persists and refreshes orders. Every main domain has its own order directory
    holding the current order snapshot and the key and CSR the order will be finalized with.
    """
    def __init__(self, acme_client, base_path):
        self.acme_client = acme_client
        self.base_path = base_path

    def order_path(self, main_domain):
        """Directory used for main_domain. Wildcards are stored using ! instead of *"""
        return os.path.join(self.base_path, main_domain.lower().replace('*', '!'))

    def _file_path(self, main_domain, file_name):
        return os.path.join(self.order_path(main_domain), file_name)

    def request_key_path(self, order):
        """Path of the private key used to build the order CSR"""
        return self._file_path(order.main_domain, REQUEST_KEY_FILE)

    def load_csr_pem(self, order):
        """Returns the PEM CSR the order must be finalized with"""
        try:
            with open(self._file_path(order.main_domain, REQUEST_CSR_FILE), 'rb') as csr_file:
                return csr_file.read()
        except FileNotFoundError as csr_error:
            raise ACMEOrderNotFound('Missing CSR for order', domain=order.main_domain, order_id=order.uri,
                                    stage='finalize') from csr_error

    def get_order(self, main_domain, refresh=False):
        """Returns the current order for main_domain, None if there isn't any"""
        try:
            with open(self._file_path(main_domain, ORDER_FILE), 'r', encoding='utf-8') as order_file:
                order = Order.from_json(json.load(order_file))
        except FileNotFoundError:
            return None
        except (ValueError, KeyError):
            logger.warning("Ignoring unreadable order file for %s", main_domain)
            return None

        if refresh:
            order = self.refresh_order(order)

        return order

    def save(self, order, stage='order'):
        """Persists the snapshot as the current order of its main domain"""
        path = self._file_path(order.main_domain, ORDER_FILE)
        tmp_path = path + '.tmp'
        try:
            os.makedirs(self.order_path(order.main_domain), mode=0o700, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as order_file:
                json.dump(order.to_json(), order_file, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except OSError as save_error:
            raise ACMEStorageError('Unable to store order: {}'.format(save_error), domain=order.main_domain,
                                   order_id=order.uri, stage=stage) from save_error

    def create_order(self, domains, key_type):
        """
        Generates a new key and CSR for domains and pushes a new order to the ACME directory.
        The new order supersedes the current one of the same main domain.
        """
        main_domain, sans = split_domains(domains)
        try:
            private_key = generate_private_key(key_type)
        except X509Error as key_error:
            raise ACMEConfigurationError('Invalid certificate key type: {}'.format(key_type),
                                         domain=main_domain, stage='order') from key_error
        csr = CertificateSigningRequest(private_key, main_domain, list(sans))
        csr_pem = csr.pem

        try:
            orderr = self.acme_client.new_order(csr_pem)
        except errors.Error as order_error:
            raise ACMERejectedError('Unable to create order: {}'.format(order_error),
                                    domain=main_domain, stage='order') from order_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to create order', domain=main_domain, stage='order') from request_error

        order = Order.from_acme(orderr.uri, orderr.body, main_domain, sans, key_type)
        # the order already exists remotely, the error must point to it
        try:
            os.makedirs(self.order_path(main_domain), mode=0o700, exist_ok=True)
            private_key.save(self._file_path(main_domain, REQUEST_KEY_FILE))
            with open(self._file_path(main_domain, REQUEST_CSR_FILE), 'wb') as csr_file:
                csr_file.write(csr_pem)
        except OSError as save_error:
            raise ACMEStorageError('Unable to store the order key and CSR: {}'.format(save_error),
                                   domain=main_domain, order_id=order.uri, stage='order') from save_error
        self.save(order)
        logger.info("Created order %s for %s with status %s", order.uri, ', '.join(order.domains), order.status.value)

        return order

    def refresh_order(self, order):
        """Fetches the current state of the order from the ACME directory"""
        try:
            body = self.acme_client.fetch_order(order.uri)
        except errors.Error as refresh_error:
            raise ACMERejectedError('Unable to refresh order: {}'.format(refresh_error), domain=order.main_domain,
                                    order_id=order.uri, stage='refresh') from refresh_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to refresh order', domain=order.main_domain,
                                     order_id=order.uri, stage='refresh') from request_error

        refreshed = order.updated_from(body)
        if refreshed.status is not order.status:
            logger.info("Order %s moved from %s to %s", order.uri, order.status.value, refreshed.status.value)
        self.save(refreshed, stage='refresh')

        return refreshed

    def record_renewal(self, order, renew_after):
        """Stores the point in time after which the order must be replaced"""
        updated = order._replace(renew_after=renew_after)
        self.save(updated, stage='artifacts')
        return updated


class AuthorizationStore:
    """Fetches the authorizations of an order. They're never cached"""
    def __init__(self, acme_client):
        self.acme_client = acme_client

    def get_authorizations(self, order):
        """Returns a tuple of Authorization snapshots, in the order listed by the order"""
        ret = []
        for uri in order.authorization_urls:
            try:
                authzr = self.acme_client.fetch_authorization(uri)
            except errors.Error as authz_error:
                raise ACMERejectedError('Unable to fetch authorization {}: {}'.format(uri, authz_error),
                                        domain=order.main_domain, order_id=order.uri,
                                        stage='authorization') from authz_error
            except requests.exceptions.RequestException as request_error:
                raise ACMETransportError('Unable to fetch authorization {}'.format(uri), domain=order.main_domain,
                                         order_id=order.uri, stage='authorization') from request_error
            ret.append(Authorization.from_acme(authzr))

        return tuple(ret)
