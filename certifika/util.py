import re
import typing
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

KEY_FILE_MODE = 0o600

PEM_CERTIFICATE_HEADER = "-----BEGIN CERTIFICATE-----"


def generate_csr(
    CN: str,
    private_key: typing.Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey],
    path: typing.Optional[Path],
    names: typing.List[str],
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param path: The path to write the PEM-serialized CSR to. Nothing is written if *None*.
    :param names: The requested names in the CSR.
    :return: The generated CSR.
    """
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, CN)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    if path is not None:
        with open(path, "wb") as pem_out:
            pem_out.write(csr.public_bytes(serialization.Encoding.PEM))

    return csr


def _write_key(path: Path, private_key) -> None:
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

    path.touch(KEY_FILE_MODE) if not path.exists() else path.chmod(KEY_FILE_MODE)

    with open(path, "wb") as pem_out:
        pem_out.write(pem)


def generate_rsa_key(path: Path, key_size=2048) -> rsa.RSAPrivateKey:
    """Generates an RSA private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The RSA key size.
    :return: The generated private key.
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    _write_key(path, private_key)
    return private_key


def generate_ec_key(path: Path, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())
    _write_key(path, private_key)
    return private_key


def names_of(
    csr: x509.CertificateSigningRequest, lower: bool = False
) -> typing.Set[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CSR whose names to extract.
    :param lower: True if the names should be returned in lowercase.
    :return: Set of the contained identifier strings.
    """
    names = [
        v.value
        for v in csr.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME)
    ]
    try:
        names.extend(
            csr.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value.get_values_for_type(x509.DNSName)
        )
    except x509.ExtensionNotFound:
        pass

    return set([name.lower() if lower else name for name in names])


_PEM_TO_CLASS = {
    b"CERTIFICATE": x509.load_pem_x509_certificate,
    b"CERTIFICATE REQUEST": x509.load_pem_x509_csr,
    b"PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
    b"EC PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
    b"RSA PRIVATE KEY": lambda x: serialization.load_pem_private_key(x, password=None),
}

_PEM_RE = re.compile(
    b"-----BEGIN (?P<cls>"
    + b"|".join(_PEM_TO_CLASS.keys())
    + b""")-----"""
    + b"""\r?
.+?\r?
-----END \\1-----\r?\n?""",
    re.DOTALL,
)


def pem_split(
    pem: str,
) -> typing.List[
    typing.Union[
        x509.CertificateSigningRequest,
        x509.Certificate,
        rsa.RSAPrivateKey,
        ec.EllipticCurvePrivateKey,
    ]
]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and private keys.

    :param pem: The concatenated PEM encoded objects.
    :return: List of all objects found in the PEM string.
    """
    return [
        _PEM_TO_CLASS[match.groupdict()["cls"]](match.group(0))
        for match in _PEM_RE.finditer(pem.encode())
    ]


def load_private_key(path: typing.Union[str, Path]):
    """Loads a PEM encoded, unencrypted private key from the given path."""
    with open(path, "rb") as pem:
        return serialization.load_pem_private_key(pem.read(), password=None)
