from datetime import datetime, timedelta, timezone
from unittest import mock

from acme_issuer.acme_requests import ACMEStatus
from acme_issuer.orders import Authorization, Challenge, Order
from acme_issuer.x509 import SelfSignedCertificate, generate_private_key

ORDER_URL = 'https://acme.test/acme/order/1'
AUTHZ_URL = 'https://acme.test/acme/authz/{}'
CHALLENGE_URL = 'https://acme.test/acme/chall/{}'
FINALIZE_URL = 'https://acme.test/acme/order/1/finalize'
CERTIFICATE_URL = 'https://acme.test/acme/cert/1'


class FakeClock:
    """Monotonic clock that only moves when sleep() is called"""
    def __init__(self, now=0.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_order(**kwargs):
    params = {
        'uri': ORDER_URL,
        'status': ACMEStatus.PENDING,
        'main_domain': 'example.com',
        'sans': (),
        'key_type': 'ec-prime256v1',
        'expires': datetime.now(timezone.utc) + timedelta(days=7),
        'renew_after': None,
        'certificate_url': None,
        'authorization_urls': (AUTHZ_URL.format(1),),
        'finalize_url': FINALIZE_URL,
        'error': None,
    }
    params.update(kwargs)
    return Order(**params)


def make_challenge(typ='dns-01', status=ACMEStatus.PENDING, error=None, uri=None):
    body = mock.MagicMock()
    body.typ = typ
    body.validation.return_value = 'validation-{}'.format(typ)
    body.validation_domain_name.side_effect = lambda name: '_acme-challenge.' + name
    body.response.return_value = mock.sentinel.response
    body.path = '/.well-known/acme-challenge/token'
    return Challenge(uri=uri or CHALLENGE_URL.format(typ), typ=typ, status=status, token='token', error=error,
                     body=body)


def make_authorization(domain='example.com', status=ACMEStatus.PENDING, challenges=None, uri=None):
    if challenges is None:
        challenges = (make_challenge('http-01'), make_challenge('dns-01'))
    wildcard = domain.startswith('*.')
    identifier = domain[2:] if wildcard else domain
    return Authorization(uri=uri or AUTHZ_URL.format(domain), status=status, identifier=identifier,
                         wildcard=wildcard, challenges=tuple(challenges))


class FakeAuthorizationStore:
    """Returns the scripted authorization snapshots, repeating the last one"""
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def get_authorizations(self, order):
        response = self.responses[min(self.calls, len(self.responses) - 1)]
        self.calls += 1
        return response


def issue_chain(private_key, domains, lifetime=timedelta(days=90)):
    """Returns a PEM leaf certificate for private_key followed by an intermediate"""
    not_before = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)
    leaf = SelfSignedCertificate(private_key=private_key, common_name=domains[0], sans=list(domains),
                                 from_date=not_before, until_date=not_before + lifetime)
    intermediate = SelfSignedCertificate(private_key=generate_private_key('ec-prime256v1'),
                                         common_name='Fake Intermediate CA', sans=[],
                                         from_date=not_before, until_date=not_before + timedelta(days=365))
    return leaf.pem + intermediate.pem
