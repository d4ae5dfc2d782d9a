"""
Signing identities.

A SigningIdentity pairs a development certificate with its private key.
It is resolved either from a PKCS#12 file or through the Apple ID
account: an existing certificate whose key is held in the vault, or a
new key and certificate signing request submitted to developer services.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, TYPE_CHECKING

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from iloader.constants import DEFAULT_MACHINE_NAME
from iloader.exceptions import CertificateNotFoundError

if TYPE_CHECKING:
    from iloader.core.accounts import AccountStore
    from iloader.core.developer import DeveloperServicesClient, ServiceContext

logger = logging.getLogger(__name__)


@dataclass
class SigningIdentity:
    """
    A certificate and its private key, held for one signing operation.

    Attributes:
        certificate: Leaf signing certificate.
        private_key: RSA private key of the certificate.
        common_name: Certificate subject common name.
        chain: Intermediate certificates to include in signatures.
    """

    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey = field(repr=False)
    common_name: str = ""
    chain: list[x509.Certificate] = field(default_factory=list)

    @property
    def serial_number(self) -> str:
        return f"{self.certificate.serial_number:X}"

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def team_id(self) -> Optional[str]:
        """Team from the certificate's organizational unit, if present."""
        units = self.certificate.subject.get_attributes_for_oid(
            NameOID.ORGANIZATIONAL_UNIT_NAME
        )
        return str(units[0].value) if units else None

    @classmethod
    def create(
        cls,
        certificate: x509.Certificate,
        private_key: rsa.RSAPrivateKey,
        chain: Optional[list[x509.Certificate]] = None,
    ) -> SigningIdentity:
        """
        Pair a certificate with a key.

        Raises:
            CertificateNotFoundError: If the key is not RSA or does not
                belong to the certificate.
        """
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CertificateNotFoundError("signing key is not an RSA key")
        if not key_matches(certificate, private_key):
            raise CertificateNotFoundError("private key does not match certificate")

        names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return cls(
            certificate=certificate,
            private_key=private_key,
            common_name=str(names[0].value) if names else "",
            chain=list(chain or []),
        )


def key_matches(certificate: x509.Certificate, private_key: rsa.RSAPrivateKey) -> bool:
    """Whether the certificate was issued for this key."""
    public = certificate.public_key()
    if not isinstance(public, rsa.RSAPublicKey):
        return False
    return public.public_numbers() == private_key.public_key().public_numbers()


def load_p12(data: bytes, passphrase: Optional[str] = None) -> SigningIdentity:
    """
    Load an identity from PKCS#12 data.

    Raises:
        CertificateNotFoundError: If the data cannot be decrypted or holds
            no certificate and key.
    """
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        key, cert, extra = pkcs12.load_key_and_certificates(data, password)
    except ValueError as e:
        raise CertificateNotFoundError("P12 could not be opened (wrong passphrase?)") from e

    if cert is None or key is None:
        raise CertificateNotFoundError("P12 holds no certificate and key")
    return SigningIdentity.create(cert, key, extra or [])


def generate_key_and_csr(common_name: str = DEFAULT_MACHINE_NAME) -> tuple[rsa.RSAPrivateKey, str]:
    """Generate an RSA-2048 key and a PEM certificate signing request for it."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(private_key, hashes.SHA256())
    )
    return private_key, csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def private_key_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


class IdentitySource(Protocol):
    """Something that can produce a SigningIdentity."""

    def resolve(self) -> SigningIdentity:
        ...


class P12IdentitySource:
    """Identity from PKCS#12 bytes and a passphrase."""

    def __init__(self, data: bytes, passphrase: Optional[str] = None):
        self._data = data
        self._passphrase = passphrase

    def resolve(self) -> SigningIdentity:
        return load_p12(self._data, self._passphrase)


class AppleIdIdentitySource:
    """
    Identity backed by an Apple ID development certificate.

    Uses a certificate whose private key is already held in the account
    vault. Without one, a new key is generated and its CSR submitted,
    unless allow_new is False. A requested certificate whose key is not
    held locally is an error.

    Args:
        client: Developer services client.
        store: Account store holding signing keys.
        context: Account, Anisette server and team.
        certificate_id: Certificate id or serial number to use.
        machine_name: Machine name sent with a new CSR.
        allow_new: Whether a new certificate may be requested.
    """

    def __init__(
        self,
        client: DeveloperServicesClient,
        store: AccountStore,
        context: ServiceContext,
        certificate_id: Optional[str] = None,
        machine_name: str = DEFAULT_MACHINE_NAME,
        allow_new: bool = True,
    ):
        self._client = client
        self._store = store
        self._context = context
        self._certificate_id = certificate_id
        self._machine_name = machine_name
        self._allow_new = allow_new
        self._resolved: Optional[SigningIdentity] = None

    def resolve(self) -> SigningIdentity:
        """Resolve once; later calls return the same identity."""
        if self._resolved is not None:
            return self._resolved

        identity = self._existing()
        if identity is None:
            if not self._allow_new:
                raise CertificateNotFoundError("no certificate with a locally held key")
            identity = self._request_new()

        self._resolved = identity
        return identity

    def _held_key(self) -> Optional[rsa.RSAPrivateKey]:
        key_pem = self._store.signing_key(
            self._context.account.identifier, self._context.team_id or ""
        )
        if key_pem is None:
            return None
        try:
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CertificateNotFoundError("the stored signing key is unreadable") from e
        return key if isinstance(key, rsa.RSAPrivateKey) else None

    def _existing(self) -> Optional[SigningIdentity]:
        key = self._held_key()
        wanted = self._certificate_id.upper() if self._certificate_id else None

        for cert in self._client.list_certificates(self._context):
            if wanted and wanted not in (cert.id.upper(), cert.serial_number.upper()):
                continue
            if cert.content is None:
                continue
            certificate = x509.load_der_x509_certificate(cert.content)
            if key is not None and key_matches(certificate, key):
                logger.info(f"Using certificate {cert.serial_number}")
                return SigningIdentity.create(certificate, key)
            if wanted:
                raise CertificateNotFoundError(
                    "the private key of the selected certificate is not held locally"
                )

        if wanted:
            raise CertificateNotFoundError(f"no certificate {self._certificate_id}")
        return None

    def _request_new(self) -> SigningIdentity:
        logger.info("Requesting a new development certificate")
        key, csr_pem = generate_key_and_csr(self._machine_name)
        request = self._client.submit_csr(self._context, csr_pem, self._machine_name)

        self._store.save_signing_key(
            self._context.account.identifier,
            self._context.team_id or "",
            private_key_pem(key),
        )

        content = request.content
        if content is None:
            content = self._client.download_certificate(
                self._context, request.serial_number
            ).content
        if content is None:
            raise CertificateNotFoundError("issued certificate could not be downloaded")

        return SigningIdentity.create(x509.load_der_x509_certificate(content), key)
