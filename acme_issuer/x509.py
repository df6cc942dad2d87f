"""
Module containing x509 helper classes

Valentin Gutierrez <vgutierrez@wikimedia.org> 2018
"""
import abc
import ipaddress
import os
import stat
from datetime import datetime, timedelta
from enum import Enum

from cryptography import x509 as crypto_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

DEFAULT_RSA_PUBLIC_EXPONENT = 65537
DEFAULT_SIGNATURE_ALGORITHM = hashes.SHA256()
OPENER_MODE = 0o640
SHORT_LIVED_CERTIFICATE = timedelta(days=10)
EC_CURVE_ALIASES = {'secp256r1': 'prime256v1'}


class X509Error(Exception):
    """Base exception class for the X509 module"""


class CertificateSaveMode(Enum):
    """
    Certificate save modes.
    To be used in Certificate.save()
    """
    CERT_ONLY = 1
    CHAIN_ONLY = 2
    FULL_CHAIN = 3  # certificate + chain


def secure_opener(path, flags):
    """
    custom opener to be used with open(file, mode, opener=secure_opener).
    Ensures that newly created files are created with OPENER_MODE permissions
    """
    return os.open(path, flags, OPENER_MODE)


class PrivateKeyLoader():
    """PrivateKey factory that reads an existing key from disk"""
    @staticmethod
    def load(filename):
        """
        Loads a private key from disk after checking that permissions
        only allow access to the owner of the file
        """
        key_stat = os.stat(filename)
        if key_stat.st_mode & (stat.S_IWGRP | stat.S_IXGRP | stat.S_IRWXO):
            raise X509Error(f"permissions ({stat.S_IMODE(key_stat.st_mode):o}) are too open for {filename}")

        with open(filename, 'rb') as key_file:
            return PrivateKeyLoader.from_pem(key_file.read())

    @staticmethod
    def from_pem(pem):
        """Wraps a PEM serialized private key in the matching PrivateKey subclass"""
        try:
            private_key = serialization.load_pem_private_key(pem, password=None)
        except (TypeError, ValueError) as load_error:
            raise X509Error('Unable to parse private key PEM') from load_error

        if isinstance(private_key, rsa.RSAPrivateKey):
            return RSAPrivateKey(private_key=private_key)
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return ECPrivateKey(private_key=private_key)
        raise X509Error("Unsupported private key type")


class PrivateKey(abc.ABC):
    """
    Base class that handles PrivateKeys. It already implements:
        - save()
    And subclasses are required to implement:
        - generate(self, **kwargs)
        - key_type_id
    """
    def __init__(self, private_key=None):
        self.key = private_key

    @abc.abstractmethod
    def generate(self, **kwargs):
        """Generates a new private key"""

    @property
    @abc.abstractmethod
    def key_type_id(self):
        """Returns the KEY_TYPES identifier matching this key"""

    @property
    def public_pem(self):
        """Returns the PEM of the public key"""
        return self.key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def private_pem(self):
        """Return the PEM of the private key"""
        return self.key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def save(self, filename):
        """Persists the private key on disk"""
        with open(filename, 'wb', opener=secure_opener) as key_file:
            key_file.write(self.private_pem)


class RSAPrivateKey(PrivateKey):
    """RSA Private Key implementation"""
    def generate(self, **kwargs):
        """
        Generates a new RSA private key
        Supported parameters:
            - size <int> default value: 2048
        """
        size = kwargs.get('size', 2048)

        self.key = rsa.generate_private_key(
            public_exponent=DEFAULT_RSA_PUBLIC_EXPONENT,
            key_size=size,
        )

    @property
    def key_type_id(self):
        return 'rsa-{}'.format(self.key.key_size)


class ECPrivateKey(PrivateKey):
    """Elliptic Curve Private Key implementation"""
    def generate(self, **kwargs):
        """
        Generates a new elliptic curve private key
        Supported parameters
            - curve <instance of cryptography.hazmat.primitives.asymmetric.ec.EllipticCurve>
              default value: ec.SECP256R1
        """
        curve = kwargs.get('curve', ec.SECP256R1)

        self.key = ec.generate_private_key(curve=curve())

    @property
    def key_type_id(self):
        # OpenSSL names the P-256 curve prime256v1
        return 'ec-{}'.format(EC_CURVE_ALIASES.get(self.key.curve.name, self.key.curve.name))


KEY_TYPES = {
    'rsa-2048': {
        'class': RSAPrivateKey,
        'params': {
            'size': 2048,
        },
    },
    'rsa-3072': {
        'class': RSAPrivateKey,
        'params': {
            'size': 3072,
        },
    },
    'rsa-4096': {
        'class': RSAPrivateKey,
        'params': {
            'size': 4096,
        },
    },
    'ec-prime256v1': {
        'class': ECPrivateKey,
        'params': {
            'curve': ec.SECP256R1,
        },
    },
    'ec-secp384r1': {
        'class': ECPrivateKey,
        'params': {
            'curve': ec.SECP384R1,
        },
    },
}


def generate_private_key(key_type_id):
    """Returns a freshly generated private key of the requested KEY_TYPES kind"""
    try:
        key_type_details = KEY_TYPES[key_type_id]
    except KeyError:
        raise X509Error('Unsupported key type: {}'.format(key_type_id))

    private_key = key_type_details['class']()
    private_key.generate(**key_type_details['params'])
    return private_key


class BaseX509Builder():
    """
    Base class for CSR and SelfSignedCertificate classes. It centralizes common stuff:
        - common name
        - SANs
        - sign() and save() methods
    """
    def __init__(self, builder, private_key, common_name, sans):
        if not isinstance(private_key, PrivateKey):
            raise TypeError("private_key must be either a RSAPrivateKey or ECPrivateKey instance")
        if not isinstance(sans, (list, tuple)):
            raise TypeError("SANs must be a tuple or a list")

        self.private_key = private_key
        self.common_name = crypto_x509.Name([
            crypto_x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ])

        self._builder = builder.subject_name(self.common_name)

        self.append_sans(sans)

    def append_sans(self, sans):
        """
        Adds the SubjectAlternativeNames with the following rules:
            - strings are added as DNS Names
            - IPv(4|6)Address instances are added as IPAddress Names
        """
        x509_names = []
        for san in sans:
            if isinstance(san, str):
                x509_names.append(crypto_x509.DNSName(san))
            elif isinstance(san, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
                x509_names.append(crypto_x509.IPAddress(san))
        if x509_names:
            self._builder = self._builder.add_extension(crypto_x509.SubjectAlternativeName(x509_names),
                                                        critical=False)

    def save(self, filename):
        """Persists the x509 document on disk after being signed"""
        with open(filename, 'wb', opener=secure_opener) as pem_file:
            pem_file.write(self.pem)

    def sign(self):
        """Signs the element being built with self.private_key using the DEFAULT_SIGNATURE algorithm"""
        return self._builder.sign(
            private_key=self.private_key.key,
            algorithm=DEFAULT_SIGNATURE_ALGORITHM,
        )

    @property
    def pem(self):
        """Returns the X.509 object serialized as a PEM"""
        return self.sign().public_bytes(encoding=serialization.Encoding.PEM)


class CertificateSigningRequest(BaseX509Builder):
    """Certificate Signing Request (CSR) generator.
    The main domain is used as common name and it's always included in the SANs"""
    def __init__(self, private_key, main_domain, sans):
        all_sans = [main_domain] + [san for san in sans if san != main_domain]
        super().__init__(crypto_x509.CertificateSigningRequestBuilder(), private_key, main_domain, all_sans)


class SelfSignedCertificate(BaseX509Builder):
    """Self Signed Certificate generator"""
    def __init__(self, private_key, common_name, sans, from_date, until_date):
        super().__init__(crypto_x509.CertificateBuilder(), private_key, common_name, sans)

        if not (isinstance(from_date, datetime) and isinstance(until_date, datetime)):
            raise TypeError("from_date/until_date parameters must be datetime.datetime instances")

        self._builder = self._builder.issuer_name(self.common_name)
        self._builder = self._builder.public_key(self.private_key.key.public_key())
        self._builder = self._builder.serial_number(crypto_x509.random_serial_number())
        self._builder = self._builder.not_valid_before(from_date)
        self._builder = self._builder.not_valid_after(until_date)


class Certificate:
    """X.509 certificate followed by its (optional) chain of intermediates"""
    def __init__(self, pem):
        if isinstance(pem, str):
            pem = pem.encode('utf-8')

        try:
            certificates = crypto_x509.load_pem_x509_certificates(pem)
        except (TypeError, ValueError) as load_pem_error:
            raise X509Error('Unable to parse PEM') from load_pem_error

        self.certificate = certificates[0]
        self.chain = [self] + [Certificate.from_x509(cert) for cert in certificates[1:]]

    @classmethod
    def from_x509(cls, certificate):
        """Wraps an already parsed cryptography certificate without chain"""
        ret = cls.__new__(cls)
        ret.certificate = certificate
        ret.chain = [ret]
        return ret

    @staticmethod
    def load(path):
        """Loads the certificate from a PEM on disk"""
        with open(path, 'rb') as pem_file:
            return Certificate(pem_file.read())

    @property
    def pem(self):
        """Returns the certificate serialized as a PEM"""
        return self.certificate.public_bytes(encoding=serialization.Encoding.PEM)

    @property
    def public_pem(self):
        """Returns the PEM of the certified public key"""
        return self.certificate.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def intermediates(self):
        """Certificates following the leaf one"""
        return self.chain[1:]

    @property
    def common_name(self):
        """Gets the Common Name (CN) of this certificate"""
        name_attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not name_attrs:
            raise X509Error('Unable to get the Common Name of the certificate')
        if len(name_attrs) > 1:
            raise X509Error('Unexpected number of common name attributes')

        return name_attrs[0].value

    @property
    def subject_alternative_names(self):
        """Gets the subject alternative names in this certificate, as a list of strings"""
        try:
            san_ext = self.certificate.extensions.get_extension_for_class(crypto_x509.SubjectAlternativeName)
        except crypto_x509.ExtensionNotFound:  # no SANs
            return []
        return [str(v.value) for v in san_ext.value]

    @property
    def renew_after(self):
        """
        Point in time after which the certificate should be replaced:
        2/3 of its lifetime, or half of it for short lived certificates
        """
        not_before = self.certificate.not_valid_before_utc
        lifetime = self.certificate.not_valid_after_utc - not_before
        if lifetime < SHORT_LIVED_CERTIFICATE:
            return not_before + lifetime / 2

        return not_before + lifetime * 2 / 3

    def save(self, path, mode=CertificateSaveMode.CERT_ONLY):
        """Persists the certificate on disk serialized as a PEM"""
        if mode is CertificateSaveMode.CERT_ONLY:
            save_chain = self.chain[0:1]
        elif mode is CertificateSaveMode.CHAIN_ONLY:
            save_chain = self.chain[1:]
        else:
            save_chain = self.chain

        with open(path, 'wb') as pem_file:
            for cert in save_chain:
                pem_file.write(cert.pem)

    def export_pkcs12(self, private_key, password=None, friendly_name=None):
        """Returns a PKCS#12 bundle with the leaf certificate and its private key"""
        if private_key.public_pem != self.public_pem:
            raise X509Error('Private key does not match the certificate')

        if password:
            encryption = serialization.BestAvailableEncryption(password.encode('utf-8'))
        else:
            encryption = serialization.NoEncryption()

        if friendly_name is not None:
            friendly_name = friendly_name.encode('utf-8')

        try:
            return pkcs12.serialize_key_and_certificates(friendly_name, private_key.key, self.certificate,
                                                         None, encryption)
        except (TypeError, ValueError) as pkcs12_error:
            raise X509Error('Unable to build PKCS#12 bundle') from pkcs12_error
