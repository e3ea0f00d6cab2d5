"""Custom exceptions for trust-sync.

This module defines the exception hierarchy used throughout the application
to provide meaningful error messages and proper error handling.
"""


class TrustSyncError(Exception):
    """Base exception for all trust-sync errors.

    All custom exceptions in this package inherit from this class,
    allowing callers to catch all trust-sync errors with a single
    except clause if desired.
    """

    pass


class NotFoundError(TrustSyncError):
    """Raised when a referenced source object or key does not exist.

    This is usually transient, for example when a Bundle is created
    before the ConfigMap or Secret it references. Callers should requeue
    rather than treat it as a permanent error.
    """

    pass


class InvalidCertificateError(TrustSyncError):
    """Raised when source data contains anything other than valid certificates.

    This can occur when:
    - A PEM block fails to parse as an X.509 certificate
    - A PEM block is not of type CERTIFICATE (e.g. a private key)
    - A PEM block carries headers
    """

    pass


class EmptyBundleError(TrustSyncError):
    """Raised when no usable certificate remains after sanitization."""

    pass


class InvalidSecretError(TrustSyncError):
    """Raised when a Secret source cannot be used safely.

    Including all keys of a TLS Secret would publish its private key.
    """

    pass


class NoDefaultPackageError(TrustSyncError):
    """Raised when a Bundle uses the default CA package but none was loaded."""

    pass


class EncodingError(TrustSyncError):
    """Raised when a trust bundle cannot be encoded as JKS or PKCS#12."""

    pass


class TargetSyncError(TrustSyncError):
    """Raised when writing one or more target objects failed.

    Attributes:
        failures: Mapping of "<Kind> <namespace>/<name>" to the error raised.

    """

    def __init__(self, failures: dict[str, Exception]) -> None:
        self.failures = failures
        details = "; ".join(f"{target}: {err}" for target, err in sorted(failures.items()))
        super().__init__(f"failed to sync {len(failures)} target(s): {details}")


class PackageLoadError(TrustSyncError):
    """Raised when the default CA package cannot be loaded.

    This can occur when:
    - The file does not exist or does not end in .json
    - The file is not valid JSON
    - The package bundle, name or version is invalid
    """

    pass


class BundleParsingError(TrustSyncError):
    """Raised when a Bundle manifest cannot be decoded.

    This can occur when:
    - The file does not exist or is not valid YAML
    - A source entry has zero or several populated variants
    - A required field is missing
    """

    pass


class ClusterConnectionError(TrustSyncError):
    """Raised when connection to the Kubernetes cluster fails.

    This can occur when:
    - The kubeconfig is invalid or missing
    - The cluster is unreachable
    - Authentication fails
    """

    pass
