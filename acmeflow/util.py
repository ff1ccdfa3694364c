import re
import typing
from pathlib import Path

import josepy
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec
from cryptography.x509 import NameOID

KEY_FILE_MODE = 0o600

EC_ALGORITHMS = {
    256: josepy.jwa.ES256,
    384: josepy.jwa.ES384,
    521: josepy.jwa.ES512,
}
"""Signature algorithm per EC key size."""


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
    _write_key(Path(path), private_key)
    return private_key


def generate_ec_key(path: Path, key_size=256) -> ec.EllipticCurvePrivateKey:
    """Generates an EC private key and saves it to the given path as PEM.

    :param path: The path to write the PEM-serialized key to.
    :param key_size: The EC key size, one of 256, 384 and 521.
    :return: The generated private key.
    """
    curve = getattr(ec, f"SECP{key_size}R1")
    private_key = ec.generate_private_key(curve())
    _write_key(Path(path), private_key)
    return private_key


def generate_csr(
    CN: str, private_key, path: typing.Optional[Path], names: typing.List[str]
) -> x509.CertificateSigningRequest:
    """Generates a certificate signing request.

    :param CN: The requested common name.
    :param private_key: The private key to sign the CSR with.
    :param path: The path to write the PEM-serialized CSR to. Nothing is written if it is *None*.
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


def load_private_key(
    path: typing.Union[str, Path]
) -> typing.Tuple[josepy.jwk.JWK, josepy.jwa.JWASignature]:
    """Loads an account key and picks the matching signature algorithm.

    :param path: Path of a PEM-encoded RSA or EC private key.
    :raises: :class:`ValueError` If the file does not contain exactly one supported private key.
    :return: The key as JWK and the signature algorithm to use with it.
    """
    with open(path, "rb") as pem:
        data = pem.read()

    keys = pem_split(data.decode())
    if len(keys) != 1:
        raise ValueError(f"Bad Private Key in file {path}")

    key = keys[0]
    if isinstance(key, rsa.RSAPrivateKey):
        return josepy.jwk.JWKRSA(key=key), josepy.jwa.RS256
    if isinstance(key, ec.EllipticCurvePrivateKey):
        try:
            alg = EC_ALGORITHMS[key.curve.key_size]
        except KeyError:
            raise ValueError(f"Unsupported EC key size {key.curve.key_size} in file {path}") from None
        return josepy.jwk.JWKEC(key=key), alg

    raise ValueError(f"Bad Private Key in file {path}")


def names_of(
    csr: "cryptography.x509.CertificateSigningRequest", lower: bool = False
) -> typing.Set[str]:
    """Returns all names contained in the given CSR.

    :param csr: The CRS whose names to extract.
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
    + b""")-----\r?
.+?\r?
-----END \\1-----\r?\n?""",
    re.DOTALL,
)


def pem_split(pem: str) -> typing.List[typing.Any]:
    """Parses a PEM encoded string and returns all contained CSRs, certificates and private keys.

    :param pem: The concatenated PEM encoded objects.
    :return: List of the parsed objects in the order they appear.
    """
    return [
        _PEM_TO_CLASS[match.group("cls")](match.group(0))
        for match in _PEM_RE.finditer(pem.encode())
    ]
