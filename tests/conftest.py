"""Shared fixtures: a throwaway RSA certificate, a mocked transport and a temp cache."""

import base64
import datetime
from unittest import mock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ksef.ksefCache import ksefCache
from ksef.ksefClient import ksefClient
from ksef.ksefCredential import ksefCredential

TOKEN = "20251010-EC-1A2B3C4D5E-6F7A8B9C0D-11|nip-5265877635|0123456789abcdef"
NIP = "5265877635"


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate_der(rsa_key):
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "KSeF test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(rsa_key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def certificate_b64(certificate_der):
    return base64.b64encode(certificate_der).decode("ascii")


@pytest.fixture()
def credential():
    return ksefCredential(TOKEN)


def valid_until(minutes=60):
    moment = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=minutes)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%f") + "0Z"


@pytest.fixture()
def client(certificate_b64):
    """ksefClient with every endpoint mocked to a successful token flow."""
    fake = mock.create_autospec(ksefClient, instance=True)
    fake.access_token = None
    fake.get_public_key_certificates.return_value = [
        {"usage": ["SymmetricKeyEncryption"], "certificate": "not-this-one"},
        {"usage": ["KsefTokenEncryption"], "certificate": certificate_b64},
    ]
    fake.get_challenge.return_value = {
        "challenge": "20251010-CR-2F0C4AA0F0-1D6BE7DD4E-8A",
        "timestampMs": 1760083200123,
    }
    fake.submit_ksef_token.return_value = {
        "referenceNumber": "20251010-AU-2F0C4AA0F0-1D6BE7DD4E-8A",
        "authenticationToken": {"token": "temporary-jwt", "validUntil": valid_until(10)},
    }
    fake.get_auth_status.return_value = {"status": {"code": 200, "description": "Uwierzytelnianie zakończone sukcesem"}}
    fake.redeem_token.return_value = {
        "accessToken": {"token": "access-jwt", "validUntil": valid_until(60)},
        "refreshToken": {"token": "refresh-jwt", "validUntil": valid_until(60 * 24)},
    }
    fake.terminate_session.return_value = {}
    return fake


@pytest.fixture()
def cache(tmp_path):
    store = ksefCache(str(tmp_path / "ksef.db"))
    yield store
    store.close()
