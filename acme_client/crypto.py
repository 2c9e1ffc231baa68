"""
Certificate private-key generation, CSR creation and PEM chain handling.

Boundary: this module owns everything cryptographic that is *certificate*-specific.
Account-key operations (JWK, JWS, EAB) live in acme_client/jws.py.
"""
from __future__ import annotations

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key for a certificate."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey) -> str:
    """Serialize a private key to an unencrypted PEM string."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def create_csr(
    private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey,
    domains: list[str],
) -> bytes:
    """
    Create a DER-encoded CSR covering *domains*.

    The first domain becomes the subject CN; every domain (deduplicated,
    order preserved) goes into the SubjectAlternativeName extension.
    """
    all_domains = list(dict.fromkeys(domains))
    if not all_domains:
        raise ValueError("a CSR needs at least one domain")

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


def split_pem_chain(full_chain: str) -> tuple[str, str]:
    """
    Split a PEM chain into (leaf_cert_pem, issuer_chain_pem).

    ACME servers return: [leaf] [intermediate1] [intermediate2] ...
    The first PEM block is the leaf; the rest form the issuer chain.
    """
    blocks = []
    current: list[str] = []
    for line in full_chain.splitlines(keepends=True):
        current.append(line)
        if "-----END CERTIFICATE-----" in line:
            blocks.append("".join(current))
            current = []

    if not blocks:
        return full_chain, ""

    return blocks[0], "".join(blocks[1:])
