from __future__ import annotations


class NFeError(Exception):
    """Base class for every error raised by the NF-e core."""


class ValidationError(NFeError):
    """Malformed or incomplete request, detected before any processor call."""


class InvalidTransition(ValidationError):
    """The requested lifecycle step is not allowed from the record's current status."""

    def __init__(self, message: str, status: str | None = None) -> None:
        super().__init__(message)
        self.status = status


class AssemblyError(NFeError):
    """The request cannot be turned into a structurally valid document."""


class InvalidKeyInput(NFeError):
    """Identifiers feeding the access-key checksum are malformed."""


class ProcessorError(NFeError):
    """The document processor failed; *diagnostic* keeps its original text."""

    def __init__(self, message: str, diagnostic: str | None = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic if diagnostic is not None else message


class ProcessorUnavailable(ProcessorError):
    """The document processor is not reachable or not initialized."""


class ProcessorTimeout(ProcessorError):
    """A processor call exceeded its deadline."""


class RejectedByAuthority(NFeError):
    """SEFAZ received a well-formed request and refused it."""

    def __init__(
        self,
        code: str | None,
        reason: str | None,
        response: dict | None = None,
    ) -> None:
        super().__init__(f"cStat {code}: {reason or 'sem motivo informado'}")
        self.code = code
        self.reason = reason
        self.response = response or {}


class EmptyBatch(NFeError):
    """A lot submission was requested without any record ids."""
