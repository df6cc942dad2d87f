"""
Module containing ACMEv2 client classes:
    - the error taxonomy shared by every stage of the order lifecycle
    - server (directory) selection
    - account persistence and resolution

Valentin Gutierrez <vgutierrez@wikimedia.org> 2018
Wikimedia Foundation 2018
"""
import hashlib
import logging
import os
from enum import Enum
from urllib.parse import urlparse

import josepy as jose
import requests
from acme import client, errors, messages

from acme_issuer.x509 import (KEY_TYPES, ECPrivateKey, PrivateKeyLoader,
                              X509Error, generate_private_key, secure_opener)

BASEPATH = '/etc/acme-issuer/accounts'
TLS_VERIFY = True   # intended to be used during testing
USER_AGENT = 'acme-issuer'
DIRECTORIES = {
    'letsencrypt': 'https://acme-v02.api.letsencrypt.org/directory',
    'letsencrypt-staging': 'https://acme-staging-v02.api.letsencrypt.org/directory',
}
REQUIRED_DIRECTORY_FIELDS = ('newNonce', 'newAccount', 'newOrder')
JWS_ALGORITHMS = {
    'rsa-2048': jose.RS256,
    'rsa-3072': jose.RS256,
    'rsa-4096': jose.RS256,
    'ec-prime256v1': jose.ES256,
    'ec-secp384r1': jose.ES384,
}

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ACMEError(Exception):
    """Base error class. Carries the context needed to diagnose a failure without re-running it"""
    def __init__(self, message='', *, domain=None, order_id=None, stage=None):
        super().__init__(message)
        self.domain = domain
        self.order_id = order_id
        self.stage = stage

    def __str__(self):
        context = ['{}={}'.format(name, value)
                   for name, value in (('stage', self.stage), ('domain', self.domain), ('order', self.order_id))
                   if value is not None]
        if not context:
            return super().__str__()

        return '{} ({})'.format(super().__str__(), ', '.join(context))


class ACMEConfigurationError(ACMEError):
    """Invalid key type, directory, plugin or challenge type. Raised before any remote mutation"""


class ACMERejectedError(ACMEError):
    """The ACME directory refused a request. The message holds the server supplied reason"""


class ACMEInvalidChallengeError(ACMERejectedError):
    """Authorization(s) have been marked as INVALID"""


class ACMEIssuanceError(ACMERejectedError):
    """The order has been marked as INVALID after being finalized"""


class ACMETimeoutError(ACMEError):
    """The ACME directory didn't reach a terminal state within the allowed time"""


class ValidationTimeoutExceeded(ACMETimeoutError):
    """Authorizations are still pending after the validation timeout"""


class IssueTimeoutExceeded(ACMETimeoutError):
    """The order is still processing after the issue timeout"""


class ACMEIntegrityError(ACMEError):
    """The ACME directory returned something that breaks the protocol contract"""


class ACMETransportError(ACMEError):
    """Error related to ACME transport protocol (HTTPS)"""


class ACMEChallengeNotValidatedError(ACMEError):
    """Challenge(s) have not been validated yet by the ACME Directory"""


class ACMEOrderNotFound(ACMEError):
    """Order not found in the order workspace"""


class ACMEStorageError(ACMEError):
    """Unable to write the accounts or orders workspace"""


class ACMEAccountFiles(Enum):
    """Files needed to persist an account"""
    KEY = 'private_key.pem'
    REGR = 'regr.json'


class ACMEChallengeType(Enum):
    """ACMEv2 challenge types"""
    DNS01 = 'dns-01'
    HTTP01 = 'http-01'
    TLSALPN01 = 'tls-alpn-01'

    @classmethod
    def from_typ(cls, typ):
        """Returns the member matching the challenge type announced by the server, None if it's unknown"""
        try:
            return cls(typ)
        except ValueError:
            return None


class ACMEStatus(Enum):
    """Possible status of an ACME object"""
    DEACTIVATED = 'deactivated'
    EXPIRED = 'expired'
    INVALID = 'invalid'
    PENDING = 'pending'
    PROCESSING = 'processing'
    READY = 'ready'
    REVOKED = 'revoked'
    UNKNOWN = 'unknown'
    VALID = 'valid'

    @classmethod
    def from_acme(cls, status):
        """Accepts acme.messages.Status instances as well as plain strings"""
        name = getattr(status, 'name', status)
        try:
            return cls(name)
        except ValueError:
            return cls.UNKNOWN


def normalize_contacts(contacts):
    """Returns the contacts as a sorted tuple of lowercase mailto: URIs"""
    ret = set()
    for contact in contacts:
        contact = contact.strip().lower()
        if not contact.startswith('mailto:'):
            contact = 'mailto:' + contact
        ret.add(contact)

    return tuple(sorted(ret))


class ACMEClient(client.ClientV2):
    """Subclass of client.ClientV2 exposing the POST-as-GET fetches needed to keep
    order and authorization snapshots in sync with the ACME directory"""
    def fetch_order(self, uri):
        """Returns the current acme.messages.Order body of the order located at uri"""
        response = self._post_as_get(uri)
        return messages.Order.from_json(response.json())

    def fetch_authorization(self, uri):
        """Returns the current acme.messages.AuthorizationResource located at uri"""
        return self._authzr_from_response(self._post_as_get(uri), uri=uri)

    def submit_finalization(self, uri, finalize_url, csr_pem):
        """Sends the finalize request without waiting for the certificate. Returns the updated order body"""
        orderr = messages.OrderResource(body=messages.Order(finalize=finalize_url), uri=uri,
                                        authorizations=[], csr_pem=csr_pem)
        return self.begin_finalization(orderr).body

    def download_certificate(self, url):
        """Returns the PEM full chain served at url"""
        return self._post_as_get(url).text


class ServerContext:
    """Keeps track of the selected ACME directory and the clients talking to it"""
    def __init__(self, directories=None):
        self.directories = dict(DIRECTORIES)
        if directories:
            self.directories.update(directories)
        self.name = None
        self.directory_url = None
        self.directory = None
        self._clients = {}

    def select(self, selector):
        """Selects the ACME directory by configured name or by URL"""
        if selector in self.directories:
            name, directory_url = selector, self.directories[selector]
        elif isinstance(selector, str) and selector.startswith('https://'):
            directory_url = selector
            name = urlparse(selector).netloc
            for configured_name, configured_url in self.directories.items():
                if configured_url == selector:
                    name = configured_name
        else:
            raise ACMEConfigurationError('Invalid directory reference: {}'.format(selector), stage='server')

        if directory_url != self.directory_url:
            self.directory = None
            self._clients = {}
        self.name = name
        self.directory_url = directory_url
        logger.debug("Selected ACME directory %s: %s", name, directory_url)
        return self

    def current_server(self):
        """Returns the acme.messages.Directory of the selected server, fetching it if needed"""
        if self.directory_url is None:
            raise ACMEConfigurationError('No ACME directory selected', stage='server')
        if self.directory is None:
            self.refresh()

        return self.directory

    def refresh(self):
        """Fetches the directory again. Clients built afterwards start with an empty nonce pool"""
        if self.directory_url is None:
            raise ACMEConfigurationError('No ACME directory selected', stage='server')

        logger.debug("Fetching ACME directory %s", self.directory_url)
        net = client.ClientNetwork(key=None, verify_ssl=TLS_VERIFY, user_agent=USER_AGENT)
        try:
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
        except (errors.Error, ValueError) as dir_error:
            raise ACMEConfigurationError('Unable to fetch directory URLs from {}'.format(self.directory_url),
                                         stage='server') from dir_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to fetch directory {}'.format(self.directory_url),
                                     stage='server') from request_error

        for field in REQUIRED_DIRECTORY_FIELDS:
            try:
                directory[field]
            except KeyError as missing_error:
                raise ACMEConfigurationError('{} is not an ACME v2 directory'.format(self.directory_url),
                                             stage='server') from missing_error

        self.directory = directory
        self._clients = {}
        return directory

    def new_client(self, jkey, alg, regr=None):
        """Returns a new ACMEClient signing with jkey"""
        net = client.ClientNetwork(key=jkey, account=regr, alg=alg, verify_ssl=TLS_VERIFY, user_agent=USER_AGENT)
        return ACMEClient(self.current_server(), net)

    def client_for(self, account):
        """Returns the ACMEClient bound to account, reusing it until the next refresh()"""
        if account.account_id not in self._clients:
            self._clients[account.account_id] = self.new_client(account.jkey, account.alg, regr=account.regr)

        return self._clients[account.account_id]


class ACMEAccount:
    """"ACMEv2 account management
    heavily based on https://github.com/certbot/certbot/blob/master/certbot/account.py
    """
    def __init__(self, *, key=None, regr=None, base_path=BASEPATH, key_type_id='ec-prime256v1'):
        self.base_path = base_path
        if key is not None:
            self.key = key
        else:
            self.key = generate_private_key(key_type_id)
        self.regr = regr
        self.account_id = hashlib.md5(self.key.public_pem).hexdigest()

    @staticmethod
    def _get_paths(account_id, base_path=BASEPATH, create_directory=False):
        directory_name = os.path.join(base_path, account_id)
        if create_directory:
            os.makedirs(directory_name, mode=0o700, exist_ok=True)

        return {account_file: os.path.join(directory_name, account_file.value) for account_file in ACMEAccountFiles}

    @property
    def key_type_id(self):
        """KEY_TYPES identifier of the account key"""
        return self.key.key_type_id

    @property
    def jkey(self):
        """Return a JOSE JWK instance of the account key"""
        if isinstance(self.key, ECPrivateKey):
            return jose.JWKEC(key=self.key.key)
        return jose.JWKRSA(key=self.key.key)

    @property
    def alg(self):
        """JWS signature algorithm matching the account key"""
        return JWS_ALGORITHMS[self.key_type_id]

    @property
    def contacts(self):
        """Normalized contacts registered for this account"""
        if self.regr is None:
            return ()
        return normalize_contacts(self.regr.body.contact)

    @property
    def status(self):
        """Last known status of the account"""
        if self.regr is None:
            return ACMEStatus.UNKNOWN
        return ACMEStatus.from_acme(self.regr.body.status)

    @classmethod
    def create(cls, contacts, server, key_type_id, base_path=BASEPATH):
        """Registers a new ACME Account using the specified contacts"""
        if key_type_id not in KEY_TYPES:
            raise ACMEConfigurationError('Invalid account key type: {}'.format(key_type_id), stage='account')

        ret = ACMEAccount(base_path=base_path, key_type_id=key_type_id)
        new_reg = messages.NewRegistration(contact=normalize_contacts(contacts),
                                           terms_of_service_agreed=True)
        acme = server.new_client(ret.jkey, ret.alg)
        try:
            regr = acme.new_account(new_reg)
        except errors.Error as account_error:
            raise ACMERejectedError('Unable to create ACME account: {}'.format(account_error),
                                    stage='account') from account_error
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to create ACME account', stage='account') from request_error

        ret.regr = messages.RegistrationResource(body=regr.body, uri=regr.uri)
        logger.info("Registered ACME account %s on %s", ret.account_id, server.name)

        return ret

    @classmethod
    def load(cls, account_id, base_path=BASEPATH):
        """Load the account with the specified account_id from disk"""
        logger.debug("Loading ACME account %s from %s", account_id, base_path)
        paths = ACMEAccount._get_paths(account_id, base_path=base_path)

        key = PrivateKeyLoader.load(paths[ACMEAccountFiles.KEY])
        with open(paths[ACMEAccountFiles.REGR], 'r', encoding='utf-8') as regr_file:
            regr = messages.RegistrationResource.json_loads(regr_file.read())

        return ACMEAccount(key=key, regr=regr, base_path=base_path)

    def save(self):
        """Stores the account on disk to be used in the future"""
        paths = ACMEAccount._get_paths(self.account_id, base_path=self.base_path, create_directory=True)
        self.key.save(paths[ACMEAccountFiles.KEY])
        with open(paths[ACMEAccountFiles.REGR], 'w', encoding='utf-8', opener=secure_opener) as regr_file:
            regr_file.write(self.regr.json_dumps())


class AccountResolver:
    """Finds an active account matching the requested contacts and key type, or registers one"""
    def __init__(self, server, base_path=BASEPATH):
        self.server = server
        self.base_path = base_path

    @property
    def accounts_path(self):
        """Accounts are stored per ACME directory"""
        return os.path.join(self.base_path, self.server.name)

    def _refresh_status(self, account):
        acme = self.server.client_for(account)
        try:
            account.regr = acme.query_registration(account.regr)
        except errors.Error as query_error:
            logger.warning("Unable to verify status of ACME account %s: %s", account.account_id, query_error)
            return ACMEStatus.UNKNOWN
        except requests.exceptions.RequestException as request_error:
            raise ACMETransportError('Unable to verify ACME account status', stage='account') from request_error

        return account.status

    def find_accounts(self, contacts, key_type_id):
        """Returns the stored accounts matching contacts and key type that the server reports as valid"""
        try:
            account_ids = sorted(os.listdir(self.accounts_path))
        except FileNotFoundError:
            return []

        wanted_contacts = normalize_contacts(contacts)
        ret = []
        for account_id in account_ids:
            try:
                account = ACMEAccount.load(account_id, base_path=self.accounts_path)
            except (OSError, ValueError, X509Error, jose.DeserializationError):
                logger.warning("Ignoring unreadable ACME account %s", account_id)
                continue

            if account.key_type_id != key_type_id or account.contacts != wanted_contacts:
                continue

            status = self._refresh_status(account)
            if status is ACMEStatus.VALID:
                ret.append(account)
            else:
                logger.info("Skipping ACME account %s with status %s", account_id, status.value)

        return ret

    def create_account(self, contacts, key_type_id):
        """Registers and persists a new account"""
        account = ACMEAccount.create(contacts, self.server, key_type_id, base_path=self.accounts_path)
        try:
            account.save()
        except OSError as save_error:
            raise ACMEStorageError('Unable to store ACME account {}: {}'.format(account.account_id, save_error),
                                   stage='account') from save_error
        return account

    def resolve(self, contacts, key_type_id):
        """Returns the first valid matching account, creating one if none exists"""
        accounts = self.find_accounts(contacts, key_type_id)
        if accounts:
            logger.info("Using ACME account %s", accounts[0].account_id)
            return accounts[0]

        logger.info("No valid ACME account found for %s, registering a new one", ', '.join(contacts) or 'no contact')
        return self.create_account(contacts, key_type_id)
