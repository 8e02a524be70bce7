import base64
import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import OAEP, MGF1
from cryptography.hazmat.backends import default_backend

from ksef import ksefError

TOKEN_ENCRYPTION_USAGE = 'KsefTokenEncryption'

logger = logging.getLogger(__name__)


def select_certificate(certificates) -> str:
    """
    Pick the public key certificate used for token encryption.

    Args:
        certificates: Response of /security/public-key-certificates, a list of
            {usage: [...], certificate: base64} or a dict with 'certificates'

    Returns:
        Base64 DER certificate

    Raises:
        CertificateUnavailable: when no certificate is offered
    """
    if isinstance(certificates, dict):
        certificates = certificates.get('certificates', [])
    if not certificates:
        raise ksefError.CertificateUnavailable("No public key certificates available from KSeF")

    for cert in certificates:
        usage = cert.get('usage') or []
        if TOKEN_ENCRYPTION_USAGE in usage and cert.get('certificate'):
            logger.info("Loaded public key certificate for token encryption")
            return cert['certificate']

    fallback = certificates[0].get('certificate') or certificates[0].get('publicKey')
    if not fallback:
        raise ksefError.CertificateUnavailable(
            "Could not extract public key from KSeF response", response_data={'certificates': certificates}
        )
    logger.info("Loaded public key certificate (fallback to first entry)")
    return fallback


def build_plaintext(token: str, timestamp_ms: int) -> str:
    return f"{token}|{timestamp_ms}"


def load_public_key(certificate: str):
    """
    Load RSA public key from a KSeF certificate.

    Accepts bare base64 DER (as served by KSeF), a PEM certificate or a PEM
    public key.
    """
    certificate = certificate.strip()
    if certificate.startswith('-----BEGIN CERTIFICATE-----'):
        public_key = x509.load_pem_x509_certificate(certificate.encode(), default_backend()).public_key()
    elif certificate.startswith('-----'):
        public_key = serialization.load_pem_public_key(certificate.encode(), default_backend())
    else:
        der = base64.b64decode(''.join(certificate.split()), validate=True)
        public_key = x509.load_der_x509_certificate(der, default_backend()).public_key()

    if not isinstance(public_key, rsa.RSAPublicKey):
        raise ValueError(f"Unsupported public key type: {type(public_key).__name__}")
    return public_key


def encrypt_token(token: str, timestamp_ms: int, certificate: str) -> str:
    """
    Encrypt token with KSeF public key using RSA-OAEP.

    Args:
        token: KSeF authorization token
        timestamp_ms: Timestamp in milliseconds (from challenge)
        certificate: Certificate returned by select_certificate()

    Returns:
        Base64-encoded encrypted token
    """
    if not token:
        raise ksefError.EncryptionFailed("No KSeF token configured")
    if not certificate:
        raise ksefError.EncryptionFailed("No public key certificate loaded")

    try:
        public_key = load_public_key(certificate)
    except (ValueError, TypeError) as e:
        raise ksefError.EncryptionFailed(f"Failed to load public key: {e}")

    try:
        encrypted = public_key.encrypt(
            build_plaintext(token, timestamp_ms).encode('utf-8'),
            OAEP(
                mgf=MGF1(algorithm=hashes.SHA256()),
                algorithm=hashes.SHA256(),
                label=None
            )
        )
    except ValueError as e:
        raise ksefError.EncryptionFailed(f"Token encryption failed: {e}")

    return base64.b64encode(encrypted).decode('utf-8')
