import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

import josepy as jose
import requests
from acme import messages
from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from acme_issuer.acme_issuer import CertificateIssuer, main
from acme_issuer.acme_requests import (ACMEAccount, ACMEConfigurationError,
                                       ACMEInvalidChallengeError, ACMEStatus,
                                       ACMETransportError, AccountResolver,
                                       ServerContext)
from acme_issuer.artifacts import LIVE_SYMLINK_NAME, VERSIONS_DIRECTORY
from acme_issuer.config import IssuerConfig
from acme_issuer.polling import PollingCancelledError
from acme_issuer.x509 import Certificate, SelfSignedCertificate, generate_private_key
from tests.helpers import FakeClock

DIRECTORY_URL = 'https://127.0.0.1:14000/dir'
DOMAINS = ['example.com']


class FakeACMEServer:
    """In memory ACME directory answering the calls performed by the ACMEClient subclass"""
    def __init__(self, fail_validation=False):
        self.fail_validation = fail_validation
        self.ca_key = generate_private_key('ec-prime256v1')
        self.orders = {}
        self.authorizations = {}
        self.new_order_calls = 0
        self.answered = []
        self.finalized = []
        self.downloads = []

    def new_order(self, csr_pem):
        self.new_order_calls += 1
        order_id = self.new_order_calls
        csr = crypto_x509.load_pem_x509_csr(csr_pem)
        names = csr.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName).value
        authorization_urls = []
        for name in names.get_values_for_type(crypto_x509.DNSName):
            uri = 'https://acme.test/authz/{}/{}'.format(order_id, name)
            self.authorizations[uri] = {'domain': name, 'status': 'pending'}
            authorization_urls.append(uri)

        uri = 'https://acme.test/order/{}'.format(order_id)
        self.orders[uri] = {
            'csr': csr,
            'status': 'pending',
            'authorizations': authorization_urls,
            'finalize': uri + '/finalize',
            'certificate': None,
        }
        return messages.OrderResource(uri=uri, body=self._order_body(uri))

    def _order_body(self, uri):
        order = self.orders[uri]
        if order['status'] == 'pending':
            statuses = {self.authorizations[authz]['status'] for authz in order['authorizations']}
            if 'invalid' in statuses:
                order['status'] = 'invalid'
            elif statuses == {'valid'}:
                order['status'] = 'ready'

        jobj = {
            'status': order['status'],
            'authorizations': order['authorizations'],
            'finalize': order['finalize'],
            'expires': (datetime.now(timezone.utc) + timedelta(days=7)).strftime('%Y-%m-%dT%H:%M:%SZ'),
        }
        if order['certificate'] is not None:
            jobj['certificate'] = order['certificate']
        return messages.Order.from_json(jobj)

    def fetch_order(self, uri):
        return self._order_body(uri)

    def fetch_authorization(self, uri):
        authorization = self.authorizations[uri]
        body = messages.Authorization.from_json({
            'identifier': {'type': 'dns', 'value': authorization['domain']},
            'status': authorization['status'],
            'challenges': [
                {'type': 'http-01', 'url': uri + '/http-01', 'status': authorization['status'],
                 'token': jose.encode_b64jose(b'h' * 16)},
                {'type': 'dns-01', 'url': uri + '/dns-01', 'status': authorization['status'],
                 'token': jose.encode_b64jose(b'd' * 16)},
            ],
        })
        return messages.AuthorizationResource(body=body, uri=uri)

    def answer_challenge(self, challb, response):
        self.answered.append(challb.uri)
        authorization_uri = challb.uri.rsplit('/', 1)[0]
        self.authorizations[authorization_uri]['status'] = 'invalid' if self.fail_validation else 'valid'

    def submit_finalization(self, uri, finalize_url, csr_pem):
        self.finalized.append(uri)
        order = self.orders[uri]
        order['status'] = 'valid'
        order['certificate'] = uri.replace('/order/', '/cert/')
        return self._order_body(uri)

    def download_certificate(self, url):
        self.downloads.append(url)
        order = self.orders[url.replace('/cert/', '/order/')]
        csr = order['csr']
        not_before = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(hours=1)
        issuer = crypto_x509.Name([crypto_x509.NameAttribute(NameOID.COMMON_NAME, 'Fake Intermediate CA')])
        leaf = crypto_x509.CertificateBuilder().subject_name(csr.subject).issuer_name(issuer) \
            .public_key(csr.public_key()).serial_number(crypto_x509.random_serial_number()) \
            .not_valid_before(not_before).not_valid_after(not_before + timedelta(days=90)) \
            .add_extension(csr.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName).value,
                           critical=False) \
            .sign(self.ca_key.key, hashes.SHA256())
        intermediate = SelfSignedCertificate(private_key=self.ca_key, common_name='Fake Intermediate CA', sans=[],
                                             from_date=not_before, until_date=not_before + timedelta(days=365))
        return (leaf.public_bytes(serialization.Encoding.PEM) + intermediate.pem).decode('utf-8')


class CertificateIssuerTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = IssuerConfig(directories={'pebble': DIRECTORY_URL}, default_directory='pebble',
                                   accounts_path=os.path.join(self.temp_dir.name, 'accounts'),
                                   orders_path=os.path.join(self.temp_dir.name, 'orders'),
                                   defaults={'dns_sleep': 0, 'poll_interval': 1})
        self.server = FakeACMEServer()
        self.account = ACMEAccount(base_path=os.path.join(self.temp_dir.name, 'accounts', 'pebble'))
        self.clock = FakeClock()

        patchers = (
            mock.patch.object(ServerContext, 'refresh'),
            mock.patch.object(ServerContext, 'client_for', return_value=self.server),
            mock.patch.object(AccountResolver, 'resolve', return_value=self.account),
        )
        self.refresh_mock, self.client_for_mock, self.resolve_mock = [patcher.start() for patcher in patchers]
        for patcher in patchers:
            self.addCleanup(patcher.stop)

    def tearDown(self):
        self.temp_dir.cleanup()

    def get_issuer(self):
        return CertificateIssuer(self.config, sleep=self.clock.sleep, clock=self.clock)

    def order_path(self, main_domain='example.com'):
        return os.path.join(self.temp_dir.name, 'orders', 'pebble', self.account.account_id, main_domain)

    def test_new_certificate(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            result = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])

        self.assertTrue(result.created)
        self.assertTrue(result.issued)
        self.assertIs(result.order.status, ACMEStatus.VALID)
        self.assertEqual(result.path, os.path.join(self.order_path(), LIVE_SYMLINK_NAME))
        self.refresh_mock.assert_called_once_with()
        self.resolve_mock.assert_called_once_with(['admin@example.org'], 'ec-prime256v1')

        self.assertEqual(self.server.new_order_calls, 1)
        self.assertEqual(self.server.answered, ['https://acme.test/authz/1/example.com/dns-01'])
        self.assertEqual(self.server.finalized, ['https://acme.test/order/1'])
        self.assertEqual(self.server.downloads, ['https://acme.test/cert/1'])

        certificate = Certificate.load(os.path.join(result.path, 'fullchain.crt'))
        self.assertEqual(certificate.common_name, 'example.com')
        self.assertEqual(certificate.subject_alternative_names, DOMAINS)
        self.assertEqual(result.order.renew_after, certificate.renew_after)
        self.assertTrue(os.path.isfile(os.path.join(result.path, 'cert.key')))

    def test_valid_order_is_reused(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            first = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
        live_target = os.readlink(first.path)

        second = self.get_issuer().new_certificate(['EXAMPLE.com'],
                                                   ['admin@example.org'])

        self.assertFalse(second.created)
        self.assertFalse(second.issued)
        self.assertEqual(second.order.uri, first.order.uri)
        self.assertEqual(self.server.new_order_calls, 1)
        self.assertEqual(len(self.server.answered), 1)
        self.assertEqual(len(self.server.finalized), 1)
        self.assertEqual(len(self.server.downloads), 1)
        self.assertEqual(os.readlink(second.path), live_target)

    def test_force_creates_new_order(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            first = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
            second = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'], force=True)

        self.assertTrue(second.created)
        self.assertTrue(second.issued)
        self.assertNotEqual(second.order.uri, first.order.uri)
        self.assertEqual(self.server.new_order_calls, 2)
        self.assertEqual(len(self.server.downloads), 2)
        self.assertEqual(len(os.listdir(os.path.join(self.order_path(), VERSIONS_DIRECTORY))), 1)

    def test_interrupted_artifacts_of_new_order_are_resumed(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            first = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
            with mock.patch.object(self.server, 'download_certificate',
                                   side_effect=requests.exceptions.ConnectionError):
                with self.assertRaises(ACMETransportError):
                    self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'], force=True)
        with open(os.path.join(first.path, 'fullchain.crt'), 'rb') as live_file:
            first_chain = live_file.read()

        third = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])

        self.assertFalse(third.created)
        self.assertTrue(third.issued)
        self.assertEqual(third.order.uri, 'https://acme.test/order/2')
        self.assertIsNotNone(third.order.renew_after)
        self.assertEqual(self.server.new_order_calls, 2)
        self.assertEqual(self.server.downloads, ['https://acme.test/cert/1', 'https://acme.test/cert/2'])
        with open(os.path.join(third.path, 'fullchain.crt'), 'rb') as live_file:
            self.assertNotEqual(live_file.read(), first_chain)

        fourth = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
        self.assertFalse(fourth.issued)
        self.assertEqual(len(self.server.downloads), 2)

    def test_sans_change_creates_new_order(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
            result = self.get_issuer().new_certificate(DOMAINS + ['www.example.com'], ['admin@example.org'])

        self.assertTrue(result.created)
        self.assertEqual(self.server.new_order_calls, 2)
        self.assertEqual(result.order.sans, ('www.example.com',))

    def test_missing_artifacts_are_regenerated(self):
        with self.assertLogs('acme_issuer.plugins', level='WARNING'):
            first = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])
        os.unlink(first.path)
        shutil.rmtree(os.path.join(self.order_path(), VERSIONS_DIRECTORY))

        second = self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])

        self.assertFalse(second.created)
        self.assertTrue(second.issued)
        self.assertEqual(self.server.new_order_calls, 1)
        self.assertEqual(len(self.server.answered), 1)
        self.assertEqual(len(self.server.finalized), 1)
        self.assertEqual(len(self.server.downloads), 2)
        self.assertTrue(os.path.isfile(os.path.join(second.path, 'fullchain.crt')))

    def test_failed_validation(self):
        self.server.fail_validation = True
        with self.assertLogs('acme_issuer', level='WARNING'):
            with self.assertRaises(ACMEInvalidChallengeError):
                self.get_issuer().new_certificate(DOMAINS, ['admin@example.org'])

        self.assertEqual(self.server.finalized, [])
        self.assertFalse(os.path.lexists(os.path.join(self.order_path(), LIVE_SYMLINK_NAME)))

    def test_configuration_errors_before_remote_calls(self):
        test_cases = (
            {'domains': [], 'kwargs': {}},
            {'domains': DOMAINS, 'kwargs': {'certificate_key_type': 'rsa-1024'}},
            {'domains': DOMAINS, 'kwargs': {'account_key_type': 'dsa-2048'}},
            {'domains': DOMAINS, 'kwargs': {'plugins': ['certbot']}},
            {'domains': DOMAINS, 'kwargs': {'directory': 'http://acme.example.org/directory'}},
        )
        for test_case in test_cases:
            with self.subTest(kwargs=test_case['kwargs']):
                with self.assertRaises(ACMEConfigurationError):
                    self.get_issuer().new_certificate(test_case['domains'], ['admin@example.org'],
                                                      **test_case['kwargs'])

        self.refresh_mock.assert_not_called()
        self.resolve_mock.assert_not_called()
        self.assertEqual(self.server.new_order_calls, 0)


@mock.patch('signal.signal')
@mock.patch('acme_issuer.acme_issuer.configure_logging')
class MainTest(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.temp_dir.name, 'config.yaml')
        with open(self.config_path, 'w') as config_file:
            config_file.write('default_directory: letsencrypt-staging\n')

    def tearDown(self):
        self.temp_dir.cleanup()

    @mock.patch.object(CertificateIssuer, 'new_certificate')
    def test_success(self, new_certificate_mock, _, signal_mock):
        new_certificate_mock.return_value.issued = True
        plugin_args_path = os.path.join(self.temp_dir.name, 'plugins.yaml')
        with open(plugin_args_path, 'w') as plugin_args_file:
            plugin_args_file.write('webroot:\n  path: /var/www/html\n')

        ret = main(['example.com', 'www.example.com', '--contact', 'admin@example.org', '--plugin', 'webroot',
                    '--plugin-args', plugin_args_path, '--force', '--dns-sleep', '5', '--config', self.config_path])

        self.assertEqual(ret, 0)
        self.assertEqual(signal_mock.call_count, 2)
        args, kwargs = new_certificate_mock.call_args
        self.assertEqual(args, (['example.com', 'www.example.com'], ['admin@example.org']))
        self.assertEqual(kwargs['plugins'], ['webroot'])
        self.assertEqual(kwargs['plugins_config'], {'webroot': {'path': '/var/www/html'}})
        self.assertTrue(kwargs['force'])
        self.assertEqual(kwargs['dns_sleep'], 5)
        self.assertIsNone(kwargs['issue_timeout'])

    @mock.patch.object(CertificateIssuer, 'new_certificate')
    def test_failures(self, new_certificate_mock, *_):
        for side_effect in (ACMEInvalidChallengeError('challenge failed', domain='example.com', stage='validation'),
                            PollingCancelledError('cancelled')):
            with self.subTest(side_effect=side_effect):
                new_certificate_mock.side_effect = side_effect
                with self.assertLogs('acme_issuer.acme_issuer', level='ERROR'):
                    self.assertEqual(main(['example.com', '--config', self.config_path]), 1)

    @mock.patch.object(CertificateIssuer, 'new_certificate')
    def test_invalid_plugin_args(self, new_certificate_mock, *_):
        malformed_path = os.path.join(self.temp_dir.name, 'malformed.yaml')
        with open(malformed_path, 'w') as plugin_args_file:
            plugin_args_file.write('- webroot\n')
        for plugin_args in (os.path.join(self.temp_dir.name, 'missing.yaml'), malformed_path):
            with self.subTest(plugin_args=plugin_args):
                with self.assertLogs('acme_issuer.acme_issuer', level='ERROR'):
                    self.assertEqual(main(['example.com', '--plugin-args', plugin_args,
                                           '--config', self.config_path]), 1)

        new_certificate_mock.assert_not_called()
