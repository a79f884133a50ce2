"""
Document Signing Service (RSA-SHA1, PKCS#1 v1.5)

Each fiscal document is signed over a canonical, semicolon-joined string:

    IssueDate;SystemEntryDate;DocumentNumber;GrossTotal;PreviousSignature

    2025-03-14;2025-03-14T10:22:05;FT/2025/000002;2500.00;<base64 of FT/2025/000001>

Feeding the previous document's signature into the next input is what makes
the series a hash chain: altering any signed field of an earlier document
breaks verification of every document after it.

Signatures are base64 encoded. Key material is always passed in, see
key_provider.py for where it comes from.
"""

import base64
import binascii
import logging
from datetime import date, datetime
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from fiscal_engine.core.exceptions import SigningError
from fiscal_engine.services.document_calculations import format_money

logger = logging.getLogger(__name__)


def _format_issue_date(value: Any) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        raise SigningError(f"Invalid issue date: {value!r}")
    return value.strftime("%Y-%m-%d")


def _format_entry_date(value: Any) -> str:
    if not isinstance(value, datetime):
        raise SigningError(f"Invalid system entry date: {value!r}")
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(private_key_pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm, AttributeError) as e:
        raise SigningError("Private key could not be parsed", details={"reason": str(e)}) from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise SigningError("Private key is not an RSA key")
    return key


def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode())
    except (ValueError, TypeError, UnsupportedAlgorithm, AttributeError) as e:
        raise SigningError("Public key could not be parsed", details={"reason": str(e)}) from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise SigningError("Public key is not an RSA key")
    return key


def public_key_from_private(private_key_pem: str) -> str:
    """Derive the SPKI PEM public key matching a private key."""
    public_key = load_private_key(private_key_pem).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def generate_key_pair(key_size: int = 2048) -> Tuple[str, str]:
    """
    Generate a new RSA key pair.

    Returns:
        (private key PEM in PKCS#8, public key PEM in SPKI)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


class InvoiceSigner:
    """Produces and verifies chained document signatures."""

    SEPARATOR = ";"

    def canonicalize(self, document: Any, previous_signature: Optional[str]) -> str:
        """
        Build the signing input for a document.

        ``document`` only needs issue_date, system_entry_date,
        document_number and total_amount.
        """
        return self.SEPARATOR.join([
            _format_issue_date(document.issue_date),
            _format_entry_date(document.system_entry_date),
            document.document_number,
            format_money(document.total_amount),
            previous_signature or "",
        ])

    def sign(self, document: Any, previous_signature: Optional[str], private_key_pem: str) -> str:
        """
        Sign a document chained to ``previous_signature``.

        Raises:
            SigningError: key unparsable or the signing primitive failed
        """
        if not private_key_pem:
            raise SigningError("No private key supplied")

        private_key = load_private_key(private_key_pem)
        payload = self.canonicalize(document, previous_signature).encode("utf-8")

        try:
            signature = private_key.sign(payload, padding.PKCS1v15(), hashes.SHA1())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            logger.error(f"Signing failed for {document.document_number}: {e.__class__.__name__}")
            raise SigningError(f"Signing failed for {document.document_number}") from e

        return base64.b64encode(signature).decode("ascii")

    def verify(
        self,
        document: Any,
        previous_signature: Optional[str],
        signature: Optional[str],
        public_key_pem: str,
    ) -> bool:
        """
        Check ``signature`` against the document and its predecessor.

        Returns False for a mismatch or a malformed signature. An unparsable
        public key raises SigningError since nothing can be verified with it.
        """
        if not signature:
            return False

        public_key = load_public_key(public_key_pem)

        try:
            raw_signature = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False

        try:
            payload = self.canonicalize(document, previous_signature).encode("utf-8")
        except SigningError:
            return False

        try:
            public_key.verify(raw_signature, payload, padding.PKCS1v15(), hashes.SHA1())
        except InvalidSignature:
            return False
        return True
