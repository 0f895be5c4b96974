"""
Self-signed certificates for serving the demo over TLS.

When --tls is set and no cert/key pair is found on disk, a certificate is
generated in memory once at startup and loaded into the server's SSLContext.
"""

import datetime
import ipaddress
import os
import secrets
import ssl
import tempfile
from typing import List, NamedTuple, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import ConfigurationError
from .log import log_line

DEFAULT_RSA_BITS = 2048
DEFAULT_VALID_FOR = datetime.timedelta(days=365)
ORGANIZATION = "Rollouts Demo"

CURVES = {
    "P224": ec.SECP224R1,
    "P256": ec.SECP256R1,
    "P384": ec.SECP384R1,
    "P521": ec.SECP521R1,
}


class InvalidOptions(ValueError):
    """CertOptions cannot produce a certificate."""


class CryptoFailure(RuntimeError):
    """Key generation, serial generation or signing failed."""


class CertOptions(NamedTuple):
    # hostnames and IPs to generate a certificate for
    hosts: List[str]
    organization: str = ORGANIZATION
    # defaults to now
    valid_from: Optional[datetime.datetime] = None
    # defaults to DEFAULT_VALID_FOR
    valid_for: Optional[datetime.timedelta] = None
    is_ca: bool = False
    # ignored when ecdsa_curve is set
    rsa_bits: int = 0
    # "", P224, P256, P384 or P521; "" means RSA
    ecdsa_curve: str = ""


def _key(opts):
    if opts.ecdsa_curve == "":
        return rsa.generate_private_key(public_exponent=65537, key_size=opts.rsa_bits or DEFAULT_RSA_BITS)
    return ec.generate_private_key(CURVES[opts.ecdsa_curve]())


def _key_pem(k):
    return k.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _serial():
    # x509 serials must be positive
    return secrets.randbelow((1 << 128) - 1) + 1


def _san(hosts):
    out = []
    for h in hosts:
        try:
            out.append(x509.IPAddress(ipaddress.ip_address(h)))
        except ValueError:
            out.append(x509.DNSName(h))
    return x509.SubjectAlternativeName(out)


def generate(opts):
    """Return (cert_pem, key_pem) for a new self-signed certificate."""
    if not opts.hosts:
        raise InvalidOptions("hosts not supplied")
    if not opts.organization:
        raise InvalidOptions("organization not supplied")
    if opts.ecdsa_curve and opts.ecdsa_curve not in CURVES:
        raise InvalidOptions(f"unrecognized elliptic curve: {opts.ecdsa_curve!r}")

    try:
        key = _key(opts)
    except (ValueError, TypeError) as e:
        raise CryptoFailure(f"failed to generate private key: {e}") from e

    try:
        serial = _serial()
    except (ValueError, OSError) as e:
        raise CryptoFailure(f"failed to generate serial number: {e}") from e

    not_before = opts.valid_from or datetime.datetime.now(datetime.timezone.utc)
    not_after = not_before + (opts.valid_for or DEFAULT_VALID_FOR)
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, opts.organization)])

    b = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=opts.is_ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=opts.is_ca,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(_san(opts.hosts), critical=False)
    )

    try:
        cert = b.sign(private_key=key, algorithm=hashes.SHA256())
    except (ValueError, TypeError) as e:
        raise CryptoFailure(f"failed to create certificate: {e}") from e

    return cert.public_bytes(serialization.Encoding.PEM), _key_pem(key)


def _exists(p):
    if not p:
        return False
    if os.path.exists(p):
        return True
    log_line({"msg": "tls file not found", "path": p})
    return False


def server_context(cert_path, key_path, hosts):
    """
    SSLContext for the server.

    Loads cert_path/key_path when both exist, otherwise generates a
    self-signed CA certificate valid for hosts.
    """
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)

    if _exists(cert_path) and _exists(key_path):
        log_line({"msg": "loading tls certificate", "cert": cert_path, "key": key_path})
        try:
            ctx.load_cert_chain(cert_path, key_path)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(
                f"unable to load tls configuration with cert={cert_path} and key={key_path}: {e}"
            ) from e
        return ctx

    log_line({"msg": "generating self-signed tls certificate for this session", "hosts": list(hosts)})
    cert_pem, key_pem = generate(CertOptions(hosts=list(hosts), is_ca=True))
    # load_cert_chain only reads files
    with tempfile.TemporaryDirectory() as d:
        cp = os.path.join(d, "tls.crt")
        kp = os.path.join(d, "tls.key")
        with open(cp, "wb") as f:
            f.write(cert_pem)
        with open(kp, "wb") as f:
            f.write(key_pem)
        ctx.load_cert_chain(cp, kp)
    return ctx
