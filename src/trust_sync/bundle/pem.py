"""PEM bundle validation and sanitization.

A trust bundle may only ever contain certificates. If, for example, someone
accidentally used a combined certificate and private key as a source, the key
must never be copied into every namespace, so anything that is not a
CERTIFICATE block is rejected rather than skipped. PEM headers are rejected
for the same reason: they are non-standard (RFC 7468) and may carry private
information.
"""

import base64
import binascii
import hashlib
import re
from datetime import datetime, timezone

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from icecream import ic

from trust_sync.exceptions import EmptyBundleError, InvalidCertificateError

_PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<type>[^\r\n-]+)-----[ \t]*\r?\n(?P<body>.*?)-----END (?P=type)-----",
    re.DOTALL,
)

_CERTIFICATE_TYPE = "CERTIFICATE"


def _parse_block(block_type: str, body: str) -> x509.Certificate:
    """Parse the body of one PEM block as a certificate.

    Raises:
        InvalidCertificateError: If the block is not a certificate, has
            headers, or fails to decode.

    """
    if block_type != _CERTIFICATE_TYPE:
        raise InvalidCertificateError(
            f"invalid PEM block in bundle: only CERTIFICATE blocks are permitted but found '{block_type}'"
        )

    lines = [line.strip() for line in body.splitlines()]
    if any(":" in line for line in lines):
        raise InvalidCertificateError("invalid PEM block in bundle: blocks are not permitted to have PEM headers")

    try:
        der = base64.b64decode("".join(lines), validate=True)
        return x509.load_der_x509_certificate(der)
    except (binascii.Error, ValueError) as err:
        raise InvalidCertificateError(f"invalid PEM block in bundle: invalid PEM certificate: {err}") from err


def split_certificates(
    raw: bytes | str,
    *,
    filter_expired: bool = False,
    now: datetime | None = None,
) -> list[x509.Certificate]:
    """Validate a PEM bundle and return its certificates in order.

    Text outside of PEM blocks is ignored. Exact duplicates are only
    returned once, at the position they first appear.

    Args:
        raw: The PEM data.
        filter_expired: Drop certificates whose NotAfter is in the past.
        now: Reference time for expiry checks, defaults to the current time.

    Returns:
        The certificates found in the bundle. May be empty.

    Raises:
        InvalidCertificateError: If any block is not a valid certificate.

    """
    if raw is None:
        raise InvalidCertificateError("certificate data can't be nil")
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    now = now or datetime.now(timezone.utc)

    seen: set[bytes] = set()
    certificates: list[x509.Certificate] = []
    for match in _PEM_BLOCK.finditer(text):
        certificate = _parse_block(match.group("type").strip(), match.group("body"))

        if filter_expired and certificate.not_valid_after_utc < now:
            ic(certificate.subject.rfc4514_string())
            continue

        digest = hashlib.sha256(certificate.public_bytes(Encoding.DER)).digest()
        if digest in seen:
            continue
        seen.add(digest)
        certificates.append(certificate)

    return certificates


def sanitize(
    raw: bytes | str,
    *,
    filter_expired: bool = False,
    now: datetime | None = None,
) -> str:
    """Validate a PEM bundle and return it in canonical form.

    Args:
        raw: The PEM data.
        filter_expired: Drop certificates whose NotAfter is in the past.
        now: Reference time for expiry checks, defaults to the current time.

    Returns:
        Newline-separated PEM certificate blocks with exactly one
        trailing newline.

    Raises:
        InvalidCertificateError: If any block is not a valid certificate.
        EmptyBundleError: If no certificate remains.

    """
    certificates = split_certificates(raw, filter_expired=filter_expired, now=now)
    if not certificates:
        if filter_expired:
            raise EmptyBundleError("no non-expired certificates found in input bundle")
        raise EmptyBundleError("bundle contains no PEM certificates")

    return "\n".join(encode_certificate(cert) for cert in certificates) + "\n"


def encode_certificate(certificate: x509.Certificate) -> str:
    """Return a single certificate as a PEM block without trailing newline."""
    return certificate.public_bytes(Encoding.PEM).decode().strip()


def decode_certificates(pem: str) -> list[x509.Certificate]:
    """Parse an already-sanitized bundle back into certificates.

    Raises:
        InvalidCertificateError: If the bundle is malformed.
        EmptyBundleError: If the bundle holds no certificate.

    """
    certificates = split_certificates(pem)
    if not certificates:
        raise EmptyBundleError("error decoding certificate PEM block")
    return certificates
