"""Bundle processing subpackage.

This package contains the stages of a reconcile pass: PEM sanitization,
source resolution, truststore encoding and target synchronization, along
with manifest parsing and status helpers.
"""

from trust_sync.bundle.package import DefaultPackage, load_package, load_package_from_file
from trust_sync.bundle.parsing import parse_bundle, parse_bundle_file
from trust_sync.bundle.pem import sanitize, split_certificates
from trust_sync.bundle.source import BundleResolver
from trust_sync.bundle.truststore import encode_additional_formats, encode_jks, encode_pkcs12

__all__ = [
    "BundleResolver",
    "DefaultPackage",
    "encode_additional_formats",
    "encode_jks",
    "encode_pkcs12",
    "load_package",
    "load_package_from_file",
    "parse_bundle",
    "parse_bundle_file",
    "sanitize",
    "split_certificates",
]
