"""
X.509 Helpers

Decodes certificates and private keys stored base64-encoded in secret
data and extracts the fields the certificate pass reports on.
"""

import base64
import binascii
import logging
from datetime import datetime
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..errors import DataShapeError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def decode_secret_field(data: str, field: str = "") -> bytes:
    """
    Decode a base64 secret value.

    Raises:
        DataShapeError: If the value is empty or not valid base64
    """
    if not data:
        raise DataShapeError(f"Field {field} is empty", field=field)
    try:
        decoded = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise DataShapeError(f"Unable to decode base64 data from field: {field}", field=field)
    if not decoded:
        raise DataShapeError(f"Field {field} decoded to empty data", field=field)
    return decoded


def load_certificate(raw: bytes, field: str = "") -> x509.Certificate:
    """
    Parse PEM (first certificate of a chain) or DER bytes.

    Raises:
        DataShapeError: If the data is not a valid X.509 certificate
    """
    try:
        if b"-----BEGIN" in raw:
            return x509.load_pem_x509_certificate(raw)
        return x509.load_der_x509_certificate(raw)
    except ValueError as e:
        raise DataShapeError(f"Data in {field} is not a valid X.509 certificate: {e}", field=field)


def load_private_key(raw: bytes, field: str = "tls.key"):
    """
    Parse an unencrypted PEM or DER private key.

    Raises:
        DataShapeError: If the key cannot be parsed
    """
    try:
        if b"-----BEGIN" in raw:
            return serialization.load_pem_private_key(raw, password=None)
        return serialization.load_der_private_key(raw, password=None)
    except (ValueError, TypeError) as e:
        raise DataShapeError(f"Data in {field} is not a readable private key: {e}", field=field)


def is_self_signed(cert: x509.Certificate) -> bool:
    return cert.subject == cert.issuer


def key_matches_certificate(cert: x509.Certificate, private_key) -> bool:
    """
    True when the private key belongs to the certificate.

    RSA keys compare moduli; other key types compare the encoded
    public keys.
    """
    cert_key = cert.public_key()
    key_public = private_key.public_key()
    if isinstance(cert_key, rsa.RSAPublicKey) and isinstance(key_public, rsa.RSAPublicKey):
        return cert_key.public_numbers().n == key_public.public_numbers().n
    encoding = serialization.Encoding.DER
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    return cert_key.public_bytes(encoding, fmt) == key_public.public_bytes(encoding, fmt)


def days_until_expiry(not_after: datetime, now: datetime) -> int:
    """
    Whole days between ``now`` and ``not_after``; negative once expired.

    Truncates toward zero, so a certificate expiring later today reports 0.
    """
    return int((not_after - now).total_seconds() / SECONDS_PER_DAY)


def not_valid_before(cert: x509.Certificate) -> datetime:
    return cert.not_valid_before_utc


def not_valid_after(cert: x509.Certificate) -> datetime:
    return cert.not_valid_after_utc


def name_string(name: x509.Name) -> str:
    return name.rfc4514_string()
