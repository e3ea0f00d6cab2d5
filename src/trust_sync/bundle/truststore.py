"""Binary truststore encoders.

Trust bundles can additionally be published as a Java keystore (JKS) or a
PKCS#12 truststore. Both encoders take the canonical PEM bundle and add one
trusted-certificate entry per certificate, in bundle order.
"""

import hashlib

import jks
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    KeySerializationEncryption,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from jks.util import KeystoreException

from trust_sync.bundle.pem import decode_certificates
from trust_sync.exceptions import EmptyBundleError, EncodingError, InvalidCertificateError
from trust_sync.models import AdditionalFormats, PKCS12Profile

_PKCS12_KDF_ROUNDS = 2048


def cert_alias(der: bytes, friendly_name: str) -> str:
    """Create a JKS-safe alias for a DER-encoded certificate.

    Two certificates only share an alias if they are identical, even when
    their subjects are equal (e.g. a rotated CA). The hash comes first so it
    survives truncation of very long subjects.

    Args:
        der: The DER-encoded certificate.
        friendly_name: A readable name, usually the subject.

    Returns:
        The alias, ``<first 8 hex chars of sha256>|<friendly name>``.

    """
    return hashlib.sha256(der).hexdigest()[:8] + "|" + friendly_name


def _certificate_alias(certificate: x509.Certificate) -> str:
    return cert_alias(certificate.public_bytes(Encoding.DER), certificate.subject.rfc4514_string())


def _decode(trust_bundle: str) -> list[x509.Certificate]:
    try:
        return decode_certificates(trust_bundle)
    except (InvalidCertificateError, EmptyBundleError) as err:
        raise EncodingError(f"failed to decode trust bundle: {err}") from err


def encode_jks(trust_bundle: str, password: str) -> bytes:
    """Create a binary JKS file from a PEM trust bundle.

    The password is not a meaningful security measure here, since nothing
    secret is stored, but JKS consumers generally expect one.

    Entry timestamps are taken from each certificate's NotBefore so that
    encoding the same bundle twice produces identical bytes.

    Args:
        trust_bundle: The canonical PEM bundle.
        password: The keystore password.

    Returns:
        The encoded keystore.

    Raises:
        EncodingError: If the bundle cannot be decoded or stored.

    """
    entries = []
    for certificate in _decode(trust_bundle):
        entry = jks.TrustedCertEntry.new(_certificate_alias(certificate), certificate.public_bytes(Encoding.DER))
        entry.type = "X.509"
        entry.timestamp = int(certificate.not_valid_before_utc.timestamp()) * 1000
        entries.append(entry)

    try:
        return jks.KeyStore.new("jks", entries).saves(password)
    except KeystoreException as err:
        raise EncodingError(f"failed to create JKS file: {err}") from err


def _pkcs12_encryption(password: str, profile: PKCS12Profile) -> KeySerializationEncryption:
    if not password:
        return NoEncryption()

    builder = PrivateFormat.PKCS12.encryption_builder().kdf_rounds(_PKCS12_KDF_ROUNDS)
    match profile:
        case PKCS12Profile.MODERN_2023:
            builder = builder.key_cert_algorithm(pkcs12.PBES.PBESv2SHA256AndAES256CBC).hmac_hash(hashes.SHA256())
        case PKCS12Profile.LEGACY_RC2 | PKCS12Profile.LEGACY_DES:
            # RC2 is not available; both legacy profiles use 3DES with a SHA-1 MAC
            builder = builder.key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC).hmac_hash(hashes.SHA1())
    return builder.build(password.encode())


def encode_pkcs12(
    trust_bundle: str,
    password: str,
    profile: PKCS12Profile = PKCS12Profile.LEGACY_DES,
) -> bytes:
    """Create a certificate-only PKCS#12 truststore from a PEM trust bundle.

    An empty password produces a password-less truststore, the default
    Java truststore format since Java 18.

    Args:
        trust_bundle: The canonical PEM bundle.
        password: The truststore password.
        profile: The encryption profile used when a password is set.

    Returns:
        The encoded truststore.

    Raises:
        EncodingError: If the bundle cannot be decoded or serialized.

    """
    cas = [
        pkcs12.PKCS12Certificate(certificate, _certificate_alias(certificate).encode())
        for certificate in _decode(trust_bundle)
    ]

    try:
        return pkcs12.serialize_key_and_certificates(None, None, None, cas, _pkcs12_encryption(password, profile))
    except (TypeError, ValueError) as err:
        raise EncodingError(f"failed to create PKCS#12 truststore: {err}") from err


def encode_additional_formats(trust_bundle: str, formats: AdditionalFormats | None) -> dict[str, bytes]:
    """Encode a trust bundle in every configured additional format.

    Args:
        trust_bundle: The canonical PEM bundle.
        formats: The Bundle's additional formats, if any.

    Returns:
        Mapping of target data key to encoded bytes.

    Raises:
        EncodingError: If any encoding fails.

    """
    binary_data: dict[str, bytes] = {}
    if formats is None:
        return binary_data

    if formats.jks is not None:
        binary_data[formats.jks.key] = encode_jks(trust_bundle, formats.jks.password)

    if formats.pkcs12 is not None:
        binary_data[formats.pkcs12.key] = encode_pkcs12(
            trust_bundle, formats.pkcs12.password, formats.pkcs12.profile
        )

    return binary_data
