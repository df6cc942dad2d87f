"""
Module containing the artifact pipeline: turns the certificate chain of a valid order into the
files served to the users of the order workspace
"""
import collections
import logging
import os
import shutil
import tempfile
import uuid

import requests
from acme import errors

from acme_issuer.acme_requests import (ACMEIntegrityError, ACMEOrderNotFound,
                                       ACMERejectedError, ACMEStorageError,
                                       ACMETransportError)
from acme_issuer.x509 import (Certificate, CertificateSaveMode,
                              PrivateKeyLoader, X509Error, secure_opener)

VERSIONS_DIRECTORY = 'versions'
LIVE_SYMLINK_NAME = 'live'
KEY_FILE_NAME = 'cert.key'
PFX_FILE_NAME = 'cert.pfx'
# naming schema borrowed from the usual certbot/letsencrypt deployments
CERTIFICATE_TYPES = {
    'cert_only': {
        'save_mode': CertificateSaveMode.CERT_ONLY,
        'file_name': 'cert.crt',
    },
    'chain_only': {
        'save_mode': CertificateSaveMode.CHAIN_ONLY,
        'file_name': 'chain.crt',
    },
    'full_chain': {
        'save_mode': CertificateSaveMode.FULL_CHAIN,
        'file_name': 'fullchain.crt',
    },
}
ARTIFACT_FILES = tuple(details['file_name'] for details in CERTIFICATE_TYPES.values()) + (KEY_FILE_NAME,
                                                                                           PFX_FILE_NAME)

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

ArtifactSet = collections.namedtuple('ArtifactSet', ('path', 'version', 'certificate'))


class ArtifactPipeline:
    """
    Downloads the certificate chain of a valid order and writes a new artifact version.
    Versions are built in a temporary directory and only become visible once the live
    symlink points to them, so the live artifacts are either the old set or the new one.
    """
    def __init__(self, order_store, acme_client, pfx_password=None):
        self.order_store = order_store
        self.acme_client = acme_client
        self.pfx_password = pfx_password

    def versions_path(self, order):
        """Directory holding every artifact version of the order main domain"""
        return os.path.join(self.order_store.order_path(order.main_domain), VERSIONS_DIRECTORY)

    def live_path(self, order):
        """Symlink pointing to the artifact version in use"""
        return os.path.join(self.order_store.order_path(order.main_domain), LIVE_SYMLINK_NAME)

    def has_live_artifacts(self, order):
        """
        True if every artifact file is available through the live symlink and the served
        certificate has been issued for the order domains and request key. Versions built
        for a previous order of the same main domain don't count
        """
        live_path = self.live_path(order)
        if not os.path.islink(live_path):
            return False

        if not all(os.path.isfile(os.path.join(live_path, file_name)) for file_name in ARTIFACT_FILES):
            return False

        try:
            certificate = self.load_live_certificate(order)
            request_key = PrivateKeyLoader.load(self.order_store.request_key_path(order))
        except (OSError, X509Error) as load_error:
            logger.warning("Unable to match live artifacts of %s with order %s: %s", order.main_domain, order.uri,
                           load_error)
            return False

        cur_sans = sorted(san.lower() for san in certificate.subject_alternative_names)
        if cur_sans != sorted(order.domains):
            logger.warning("Live certificate of %s has SANs %s but order %s is for %s", order.main_domain,
                           cur_sans, order.uri, sorted(order.domains))
            return False

        if certificate.public_pem != request_key.public_pem:
            logger.warning("Live certificate of %s wasn't issued for order %s", order.main_domain, order.uri)
            return False

        return True

    def load_live_certificate(self, order):
        """Returns the Certificate currently served through the live symlink"""
        return Certificate.load(os.path.join(self.live_path(order), CERTIFICATE_TYPES['full_chain']['file_name']))

    def _download(self, order):
        if not order.certificate_url:
            raise ACMEIntegrityError('Valid order without certificate URL', domain=order.main_domain,
                                     order_id=order.uri, stage='artifacts')

        logger.info("Downloading certificate for %s from %s", order.main_domain, order.certificate_url)
        try:
            pem = self.acme_client.download_certificate(order.certificate_url)
        except errors.Error as download_error:
            raise ACMERejectedError('Unable to download certificate: {}'.format(download_error),
                                    domain=order.main_domain, order_id=order.uri,
                                    stage='artifacts') from download_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to download certificate', domain=order.main_domain,
                                     order_id=order.uri, stage='artifacts') from request_error

        try:
            return Certificate(pem)
        except X509Error as parse_error:
            raise ACMEIntegrityError('Unable to parse the downloaded certificate chain', domain=order.main_domain,
                                     order_id=order.uri, stage='artifacts') from parse_error

    def _load_private_key(self, order):
        try:
            return PrivateKeyLoader.load(self.order_store.request_key_path(order))
        except FileNotFoundError as key_error:
            raise ACMEOrderNotFound('Missing private key for order', domain=order.main_domain,
                                    order_id=order.uri, stage='artifacts') from key_error
        except X509Error as key_error:
            raise ACMEIntegrityError('Unable to load the order private key: {}'.format(key_error),
                                     domain=order.main_domain, order_id=order.uri, stage='artifacts') from key_error

    def _write(self, path, order, certificate, private_key):
        for cert_type_details in CERTIFICATE_TYPES.values():
            certificate.save(os.path.join(path, cert_type_details['file_name']), mode=cert_type_details['save_mode'])
        private_key.save(os.path.join(path, KEY_FILE_NAME))
        pfx = certificate.export_pkcs12(private_key, password=self.pfx_password, friendly_name=order.main_domain)
        with open(os.path.join(path, PFX_FILE_NAME), 'wb', opener=secure_opener) as pfx_file:
            pfx_file.write(pfx)

    def _swap_live(self, order, version):
        live_path = self.live_path(order)
        previous = os.readlink(live_path) if os.path.islink(live_path) else None

        tmp_link = live_path + '.tmp'
        try:
            os.unlink(tmp_link)
        except FileNotFoundError:
            pass
        os.symlink(os.path.join(VERSIONS_DIRECTORY, version), tmp_link, target_is_directory=True)
        os.replace(tmp_link, live_path)

        return previous

    def generate(self, order):
        """Builds and promotes a new artifact version for a valid order. Returns an ArtifactSet"""
        certificate = self._download(order)
        private_key = self._load_private_key(order)

        versions_path = self.versions_path(order)
        version = uuid.uuid4().hex
        version_path = os.path.join(versions_path, version)

        try:
            os.makedirs(versions_path, mode=0o750, exist_ok=True)
            work_path = tempfile.mkdtemp(prefix='.tmp-', dir=versions_path)
        except OSError as mkdir_error:
            raise ACMEStorageError('Unable to create an artifact version: {}'.format(mkdir_error),
                                   domain=order.main_domain, order_id=order.uri, stage='artifacts') from mkdir_error
        try:
            self._write(work_path, order, certificate, private_key)
            os.chmod(work_path, 0o750)
            os.rename(work_path, version_path)
            work_path = version_path
            previous = self._swap_live(order, version)
        except (OSError, X509Error) as write_error:
            shutil.rmtree(work_path, ignore_errors=True)
            if isinstance(write_error, X509Error):
                raise ACMEIntegrityError('Unable to build the artifacts: {}'.format(write_error),
                                         domain=order.main_domain, order_id=order.uri,
                                         stage='artifacts') from write_error
            raise ACMEStorageError('Unable to write the artifacts: {}'.format(write_error), domain=order.main_domain,
                                   order_id=order.uri, stage='artifacts') from write_error
        except BaseException:
            shutil.rmtree(work_path, ignore_errors=True)
            raise

        logger.info("Promoted artifact version %s for %s", version, order.main_domain)
        if previous is not None and os.path.basename(previous) != version:
            previous_path = os.path.join(self.order_store.order_path(order.main_domain), previous)
            logger.debug("Removing superseded artifact version %s", previous_path)
            shutil.rmtree(previous_path, ignore_errors=True)

        return ArtifactSet(path=self.live_path(order), version=version, certificate=certificate)
