# ACME certificate issuance client
# Valentin Gutierrez <vgutierrez@wikimedia.org> Wikimedia Foundation. 2018

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.

# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
This module drives a certificate request end to end: ACME directory selection, account
resolution, order reconciliation, domain validation, finalization and artifact generation.
"""
import argparse
import collections
import copy
import logging
import logging.config
import os
import signal
import sys
import threading
import time

import yaml

from acme_issuer.acme_requests import (AccountResolver, ACMEConfigurationError,
                                       ACMEError, ACMEStatus, ServerContext)
from acme_issuer.artifacts import ArtifactPipeline
from acme_issuer.challenges import ChallengeOrchestrator
from acme_issuer.config import DEFAULT_CONFIG_PATH, IssuerConfig
from acme_issuer.finalize import FinalizationDriver
from acme_issuer.orders import AuthorizationStore, OrderStore, split_domains
from acme_issuer.plugins import load_backends
from acme_issuer.polling import PollingCancelledError
from acme_issuer.reconciler import OrderReconciler
from acme_issuer.x509 import KEY_TYPES

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

VERSION = '0.1'

LOGGING_CONFIG = {
    'disable_existing_loggers': False,
    'version': 1,
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',  # logging handler that outputs log messages to terminal
            'level': 'INFO',                   # message level to be written to console
        },
    },
    'loggers': {
        'acme_issuer': {
            'handlers': ['console'],
            'level': 'INFO',
        },
    }
}

IssuedCertificate = collections.namedtuple('IssuedCertificate', ('order', 'path', 'created', 'issued'))


def configure_logging(verbose=False):
    """Configure logging"""
    logging_config = copy.deepcopy(LOGGING_CONFIG)
    if verbose:
        logging_config['handlers']['console']['level'] = 'DEBUG'
        logging_config['loggers']['acme_issuer']['level'] = 'DEBUG'
    logging.config.dictConfig(logging_config)


class CertificateIssuer:
    """
    Runs the certificate request pipeline. Each stage refreshes the order from the ACME directory
    before acting on it, so an interrupted request resumes from whatever state the server reports.
    """
    def __init__(self, config=None, *, cancel=None, sleep=time.sleep, clock=time.monotonic):
        if config is None:
            config = IssuerConfig()
        self.config = config
        self.cancel = cancel
        self.sleep = sleep
        self.clock = clock

    def _setting(self, value, name):
        if value is None:
            return self.config.defaults[name]
        return value

    @staticmethod
    def _check_key_type(key_type, parameter):
        if key_type not in KEY_TYPES:
            raise ACMEConfigurationError('Invalid {}: {} (valid ones: {})'.format(parameter, key_type,
                                                                                ', '.join(sorted(KEY_TYPES))),
                                         stage='configuration')

    def new_certificate(self, domains, contacts=(), *, account_key_type=None, certificate_key_type=None,
                        directory=None, plugins=None, plugins_config=None, force=False, dns_sleep=None,
                        validation_timeout=None, issue_timeout=None, pfx_password=None):
        """
        Returns an IssuedCertificate for domains (first one being the main domain).
        Raises ACMEError or PollingCancelledError if the certificate can't be produced
        """
        # configuration problems are reported before talking to the ACME directory
        main_domain, sans = split_domains(domains)
        account_key_type = self._setting(account_key_type, 'account_key_type')
        certificate_key_type = self._setting(certificate_key_type, 'certificate_key_type')
        self._check_key_type(account_key_type, 'account key type')
        self._check_key_type(certificate_key_type, 'certificate key type')

        merged_plugins_config = dict(self.config.plugins)
        merged_plugins_config.update(plugins_config or {})
        backends = load_backends(plugins or [self.config.defaults['plugin']], merged_plugins_config)

        server = ServerContext(self.config.directories).select(directory or self.config.default_directory)
        server.refresh()

        account = AccountResolver(server, self.config.accounts_path).resolve(contacts, account_key_type)
        acme_client = server.client_for(account)

        order_store = OrderStore(acme_client, os.path.join(self.config.orders_path, server.name, account.account_id))
        authorization_store = AuthorizationStore(acme_client)
        artifacts = ArtifactPipeline(order_store, acme_client,
                                     pfx_password=self._setting(pfx_password, 'pfx_password'))

        reconciled = OrderReconciler(order_store).reconcile((main_domain,) + sans, certificate_key_type,
                                                            force=force)
        order = reconciled.order

        # renew_after is only recorded once the artifacts of the order have been promoted
        if order.status is ACMEStatus.VALID and order.renew_after is not None and artifacts.has_live_artifacts(order):
            logger.info("Certificate for %s is up to date: %s", main_domain, artifacts.live_path(order))
            return IssuedCertificate(order=order, path=artifacts.live_path(order), created=reconciled.created,
                                     issued=False)

        if order.status is not ACMEStatus.VALID:
            if order.status is ACMEStatus.PENDING:
                ChallengeOrchestrator(authorization_store, acme_client, account.jkey, backends,
                                      dns_sleep=self._setting(dns_sleep, 'dns_sleep'),
                                      validation_timeout=self._setting(validation_timeout, 'validation_timeout'),
                                      poll_interval=self.config.defaults['poll_interval'],
                                      cancel=self.cancel, sleep=self.sleep, clock=self.clock).validate(order)

            order = FinalizationDriver(order_store, authorization_store, acme_client,
                                       issue_timeout=self._setting(issue_timeout, 'issue_timeout'),
                                       poll_interval=self.config.defaults['poll_interval'],
                                       cancel=self.cancel, sleep=self.sleep, clock=self.clock).finalize(order)
        else:
            logger.info("Order %s is valid but its artifacts are missing", order.uri)

        artifact_set = artifacts.generate(order)
        order = order_store.record_renewal(order, artifact_set.certificate.renew_after)
        logger.info("Certificate for %s stored on %s, renewal scheduled after %s", main_domain, artifact_set.path,
                    order.renew_after.isoformat())

        return IssuedCertificate(order=order, path=artifact_set.path, created=reconciled.created, issued=True)


def _load_plugins_config(file_name):
    if file_name is None:
        return {}

    with open(file_name, encoding='utf-8') as plugins_file:
        plugins_config = yaml.safe_load(plugins_file)

    if plugins_config is None:
        return {}
    if not isinstance(plugins_config, dict):
        raise ACMEConfigurationError('{} must contain a plugin name to configuration mapping'.format(file_name),
                                     stage='plugin')
    return plugins_config


def get_parser():
    """Returns the CLI argument parser"""
    parser = argparse.ArgumentParser(description="""Requests a certificate from an ACME directory.
    Existing orders are reused while they're compatible with the request, so running it again
    before the renewal time does nothing.""")
    parser.add_argument('--version', action='version', version=VERSION)
    parser.add_argument('domains', nargs='+', metavar='DOMAIN',
                        help='domains to be included in the certificate, the first one is used as CN')
    parser.add_argument('--contact', action='append', default=[], dest='contacts',
                        help='account contact email, can be specified multiple times')
    parser.add_argument('--account-key-type', choices=sorted(KEY_TYPES))
    parser.add_argument('--cert-key-type', choices=sorted(KEY_TYPES))
    parser.add_argument('--directory', help='configured ACME directory name or directory URL')
    parser.add_argument('--plugin', action='append', dest='plugins',
                        help='validation plugin, one per domain. The last one serves the remaining domains')
    parser.add_argument('--plugin-args', metavar='FILE', help='YAML file with the validation plugins configuration')
    parser.add_argument('--force', action='store_true', help='create a new order even if the current one is valid')
    parser.add_argument('--dns-sleep', type=float, help='seconds to wait for the proofs to propagate')
    parser.add_argument('--validation-timeout', type=float)
    parser.add_argument('--issue-timeout', type=float)
    parser.add_argument('--pfx-password')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH)
    parser.add_argument('--verbose', action='store_true')

    return parser


def main(argv=None):
    """
    CLI entry point. Returns the process exit status
    """
    args = get_parser().parse_args(argv)
    configure_logging(args.verbose)

    cancel = threading.Event()

    def cancel_handler(signum, *_):
        logger.warning("Signal %d received, stopping at the next polling attempt", signum)
        cancel.set()

    signal.signal(signal.SIGINT, cancel_handler)
    signal.signal(signal.SIGTERM, cancel_handler)

    try:
        plugins_config = _load_plugins_config(args.plugin_args)
    except (OSError, yaml.YAMLError, ACMEConfigurationError) as plugin_args_error:
        logger.error("Unable to load plugin arguments from %s: %s", args.plugin_args, plugin_args_error)
        return 1

    config = IssuerConfig.load(args.config)
    issuer = CertificateIssuer(config, cancel=cancel)
    try:
        result = issuer.new_certificate(args.domains, args.contacts,
                                        account_key_type=args.account_key_type,
                                        certificate_key_type=args.cert_key_type,
                                        directory=args.directory,
                                        plugins=args.plugins,
                                        plugins_config=plugins_config,
                                        force=args.force,
                                        dns_sleep=args.dns_sleep,
                                        validation_timeout=args.validation_timeout,
                                        issue_timeout=args.issue_timeout,
                                        pfx_password=args.pfx_password)
    except (ACMEError, PollingCancelledError) as issue_error:
        logger.error("Unable to get a certificate for %s: %s", args.domains[0], issue_error)
        return 1

    if result.issued:
        logger.info("New certificate available on %s", result.path)
    return 0


if __name__ == '__main__':
    sys.exit(main())
