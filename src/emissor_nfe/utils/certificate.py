"""A1 certificate checks.

Signing itself happens inside the document processor; this module only
verifies that the configured .pfx opens with the configured password and
reports its validity window before the processor is initialized.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID


def _load_certificate(pfx_path: str, password: str) -> Certificate:
    pfx_data = Path(pfx_path).read_bytes()
    _, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, password.encode())
    if certificate is None:
        raise ValueError("No certificate found in .pfx file")
    return certificate


def _subject_cnpj(certificate: Certificate) -> str | None:
    """ICP-Brasil e-CNPJ certificates carry ``NAME:CNPJ`` in the subject CN."""
    names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    for attr in names:
        value = str(attr.value)
        _, sep, tail = value.rpartition(":")
        if sep and tail.isdigit() and len(tail) == 14:
            return tail
    return None


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Validate certificate and return info."""
    certificate = _load_certificate(pfx_path, password)
    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
        "cnpj": _subject_cnpj(certificate),
    }
