"""Self-signed CA material for TLS-enabled database containers.

This module generates a throwaway certificate authority and stages it on the
host so it can be bind-mounted into a container.

## Certificate profile

- RSA 2048 key, SHA-256 signature
- Valid for 10 years, backdated by 10 seconds to tolerate clock skew
- Key usage limited to certificate and CRL signing, `serverAuth` extended usage
- `127.0.0.1` as IP subject alternative name

## Failure policy

Key generation or encoding failures raise `CryptoBackendError`. Nothing
downstream can be trusted when the crypto backend is broken, so the error is
never caught inside the library.
"""

import ipaddress
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import attrs
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from mongotest.foundation.exceptions import CryptoBackendError

logger = logging.getLogger(__name__)

CLOCK_SKEW_ALLOWANCE = timedelta(seconds=10)
VALIDITY_YEARS = 10
KEY_SIZE = 2048
STAGED_FILE_PREFIX = "mongo-tls-"
STAGED_FILE_NAME = "ca.pem"


@attrs.define(frozen=True, slots=True)
class CAMaterial:
    """A generated certificate authority.

    Attributes:
        certificate: Parsed self-signed CA certificate.
        pem: PEM encoding of `certificate`.
        private_key: The CA's RSA private key.
    """

    certificate: x509.Certificate
    pem: bytes
    private_key: rsa.RSAPrivateKey

    @property
    def key_pem(self) -> bytes:
        """Unencrypted PKCS#8 PEM encoding of the private key."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def bundle_pem(self) -> bytes:
        """Certificate followed by its key, as mongod's key file expects."""
        return self.pem + self.key_pem


def _add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def generate_ca(now: datetime | None = None) -> CAMaterial:
    """Generate a self-signed CA certificate and its private key.

    Args:
        now: Reference time for the validity window. Defaults to the current
            UTC time.

    Returns:
        The generated `CAMaterial`.

    Raises:
        CryptoBackendError: If key generation, signing or encoding fails.
    """
    now = now or datetime.now(timezone.utc)
    try:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
        name = x509.Name(
            [
                x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "mongotest"),
                x509.NameAttribute(NameOID.COMMON_NAME, "Root CA"),
            ]
        )
        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - CLOCK_SKEW_ALLOWANCE)
            .not_valid_after(_add_years(now, VALIDITY_YEARS))
            .add_extension(x509.BasicConstraints(ca=True, path_length=2), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(
                x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]),
                critical=False,
            )
        )
        certificate = builder.sign(private_key, hashes.SHA256())
        pem = certificate.public_bytes(serialization.Encoding.PEM)
    except Exception as e:
        msg = f"failed to generate CA material: {e}"
        raise CryptoBackendError(msg) from e

    return CAMaterial(certificate=certificate, pem=pem, private_key=private_key)


def stage_ca_material(material: CAMaterial, directory: str | os.PathLike[str] | None = None) -> Path:
    """Write CA material into a new private directory and return the file path.

    The directory is created with mode 0700 so other local users cannot
    reach the private key. The file itself is world-readable because the
    database process inside the container does not run as the host user;
    the bind mount exposes the file without the parent directory. The
    caller owns both and releases them with `discard_staged_material()`.

    Args:
        material: CA material to stage.
        directory: Parent of the private staging directory. Defaults to the
            system temporary directory.

    Returns:
        Path of the staged PEM file (certificate followed by key).

    Raises:
        OSError: If the directory or file cannot be created or written.
    """
    staging_dir = Path(tempfile.mkdtemp(prefix=STAGED_FILE_PREFIX, dir=directory))
    path = staging_dir / STAGED_FILE_NAME
    try:
        path.write_bytes(material.bundle_pem())
        path.chmod(0o644)
    except OSError:
        shutil.rmtree(staging_dir, ignore_errors=True)
        raise
    logger.debug("Staged CA material", extra={"path": str(path)})
    return path


def discard_staged_material(path: Path) -> None:
    """Delete a file created by `stage_ca_material()` and its private directory.

    Raises:
        OSError: If the file or directory cannot be removed.
    """
    path.unlink(missing_ok=True)
    if path.parent.name.startswith(STAGED_FILE_PREFIX):
        path.parent.rmdir()
