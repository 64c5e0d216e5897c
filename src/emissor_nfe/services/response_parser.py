"""Parser for the sectioned ``[Section]`` / ``key=value`` replies of the processor.

Example reply to a lot submission::

    [Envio]
    CStat=100
    XMotivo=Autorizado o uso da NF-e
    NProt=135240000000001
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

SUCCESS_CODES = frozenset({"100", "101", "150"})

# Uso denegado: the document is registered but may never circulate.
DENIAL_CODES = frozenset({"110", "301", "302", "303"})

# Lote recebido / em processamento: asynchronous submissions answer with these.
PENDING_CODES = frozenset({"103", "105"})

CANCEL_SUCCESS_CODES = frozenset({"101", "135", "155"})
VOID_SUCCESS_CODES = frozenset({"102"})
SERVICE_OK_CODES = frozenset({"107"})


def parse_response(text: str) -> dict[str, Any]:
    """Parse a processor reply into a dict of sections.

    Lines before any ``[Section]`` header become top-level keys. A section
    named twice starts over. Lines without ``=`` are ignored.
    """
    result: dict[str, Any] = {}
    current: dict[str, Any] = result
    for raw_line in (text or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith("[") and line.endswith("]"):
            current = {}
            result[line[1:-1]] = current
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        current[key.strip()] = value.strip()
    return result


@dataclass(frozen=True)
class GatewayVerdict:
    success: bool
    code: str | None
    reason: str | None
    data: dict[str, Any] = field(default_factory=dict)
    raw: str = ""
    sections: tuple[str, ...] = ("Envio",)

    def get(self, key: str, section: str | None = None) -> str | None:
        """Look *key* up in *section* (or the verdict sections), then at top level."""
        for name in (section,) if section else self.sections:
            block = self.data.get(name)
            if isinstance(block, dict) and key in block:
                return block[key]
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def section(self, name: str) -> dict[str, Any]:
        block = self.data.get(name)
        return block if isinstance(block, dict) else {}


def interpret(
    text: str,
    sections: Iterable[str] = ("Envio",),
    success_codes: Iterable[str] = SUCCESS_CODES,
) -> GatewayVerdict:
    """Turn a raw reply into a verdict.

    The code comes from ``CStat`` of the first listed section that has one,
    else the top level. The reason is ``XMotivo`` looked up the same way,
    falling back to a top-level ``Msg``.
    """
    data = parse_response(text)
    sections = tuple(sections)
    verdict = GatewayVerdict(
        success=False, code=None, reason=None, data=data, raw=text or "", sections=sections
    )
    code = verdict.get("CStat")
    reason = verdict.get("XMotivo")
    if reason is None:
        reason = verdict.get("Msg")
    return GatewayVerdict(
        success=code is not None and code in frozenset(success_codes),
        code=code,
        reason=reason,
        data=data,
        raw=text or "",
        sections=sections,
    )
