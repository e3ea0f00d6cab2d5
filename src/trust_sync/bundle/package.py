"""Default CA package loading.

A package is a JSON document read from the filesystem at startup and used
by Bundles that request the default CAs. The JSON layout must stay both
forwards and backwards compatible::

    {"name": "cert-manager-debian", "version": "20210119.0", "bundle": "-----BEGIN..."}
"""

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from trust_sync.bundle.pem import sanitize
from trust_sync.exceptions import EmptyBundleError, InvalidCertificateError, PackageLoadError

_REQUIRED_EXT = ".json"


@dataclass(frozen=True, slots=True)
class DefaultPackage:
    """A default CA package.

    Attributes:
        name: Friendly name of the package.
        version: Distinguishes updated packages from older ones.
        bundle: The PEM certificates provided by the package.

    """

    name: str
    version: str
    bundle: str

    @property
    def string_id(self) -> str:
        """A human-readable id distinguishing one package from another."""
        bundle_hash = hashlib.sha256(self.bundle.encode()).digest()
        return f"{self.name}-{self.version}-{bundle_hash[:8].hex()}"

    def validate(self) -> None:
        """Check the package is usable.

        The bundle is validated but kept as-is; it is sanitized again
        whenever a Bundle uses it.

        Raises:
            PackageLoadError: If the bundle, name or version is invalid.

        """
        try:
            sanitize(self.bundle)
        except (InvalidCertificateError, EmptyBundleError) as err:
            raise PackageLoadError(f"package bundle failed validation: {err}") from err

        if not self.name:
            raise PackageLoadError("package may not have an empty 'name'")
        if not self.version:
            raise PackageLoadError("package may not have an empty 'version'")


def load_package(stream: IO[str]) -> DefaultPackage:
    """Read and validate a package from an open text stream.

    Raises:
        PackageLoadError: If the JSON is malformed or the package is invalid.

    """
    try:
        raw = json.load(stream)
    except json.JSONDecodeError as err:
        raise PackageLoadError(f"failed to parse package JSON: {err}") from err

    if not isinstance(raw, dict):
        raise PackageLoadError("failed to parse package JSON: expected an object")

    package = DefaultPackage(
        name=str(raw.get("name") or ""),
        version=str(raw.get("version") or ""),
        bundle=str(raw.get("bundle") or ""),
    )
    package.validate()
    return package


def load_package_from_file(path: str | Path) -> DefaultPackage:
    """Load a package from a ``.json`` file.

    Args:
        path: Location of the package file.

    Returns:
        The validated package.

    Raises:
        PackageLoadError: If the file is missing, has the wrong extension
            or holds an invalid package.

    """
    path = Path(path)
    if path.suffix != _REQUIRED_EXT:
        raise PackageLoadError(
            f"can't load package at path '{path}' since it doesn't have the required '{_REQUIRED_EXT}' extension"
        )

    try:
        with path.open() as stream:
            return load_package(stream)
    except FileNotFoundError as err:
        raise PackageLoadError(f"failed to open package on filesystem '{path}': {err}") from err
    except PackageLoadError as err:
        raise PackageLoadError(f"failed to load package '{path}': {err}") from err
