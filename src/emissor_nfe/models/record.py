from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from emissor_nfe.config import BRT


class InvoiceStatus(StrEnum):
    DRAFT = "rascunho"
    VALIDATED = "validada"
    AUTHORIZED = "autorizada"
    REJECTED = "rejeitada"
    CANCELLED = "cancelada"
    DENIED = "denegada"


TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.DENIED}),
    InvoiceStatus.VALIDATED: frozenset({
        InvoiceStatus.VALIDATED,
        InvoiceStatus.AUTHORIZED,
        InvoiceStatus.REJECTED,
        InvoiceStatus.DENIED,
    }),
    InvoiceStatus.AUTHORIZED: frozenset({InvoiceStatus.CANCELLED}),
    InvoiceStatus.REJECTED: frozenset(),
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.DENIED: frozenset(),
}


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in TRANSITIONS[current]


_DECIMAL_FIELDS = ("valor_produtos", "valor_total", "valor_icms", "valor_pis", "valor_cofins")
_DATETIME_FIELDS = ("autorizada_em", "created_at", "updated_at")


def _now() -> datetime:
    return datetime.now(BRT)


@dataclass(frozen=True)
class InvoiceRecord:
    """Persisted state of one NF-e as it moves through the authorization lifecycle.

    Records are immutable; the lifecycle manager stores a new copy (via
    :meth:`evolve`) on every change.
    """

    id: str
    serie: int
    numero: int
    natureza_operacao: str
    tp_nf: str
    fin_nfe: str
    tp_amb: str
    emitente_cnpj: str
    emitente_nome: str
    emitente_uf: str
    destinatario_doc: str
    destinatario_nome: str
    valor_produtos: Decimal
    valor_total: Decimal
    valor_icms: Decimal = Decimal("0")
    valor_pis: Decimal = Decimal("0")
    valor_cofins: Decimal = Decimal("0")
    chave: str | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    protocolo: str | None = None
    autorizada_em: datetime | None = None
    mensagem: str | None = None
    codigo_status: str | None = None
    xml: str | None = None
    xml_assinado: str | None = None
    request: dict[str, Any] = field(default_factory=dict)
    inf_cpl: str | None = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def evolve(self, **changes: Any) -> InvoiceRecord:
        """Return a copy with *changes* applied and ``updated_at`` refreshed."""
        changes.setdefault("updated_at", _now())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in _DECIMAL_FIELDS:
            data[name] = str(data[name])
        for name in _DATETIME_FIELDS:
            value = data[name]
            data[name] = value.isoformat() if value is not None else None
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> InvoiceRecord:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in d.items() if k in known}
        for name in _DECIMAL_FIELDS:
            if data.get(name) is not None:
                data[name] = Decimal(str(data[name]))
        for name in _DATETIME_FIELDS:
            if data.get(name):
                data[name] = datetime.fromisoformat(data[name])
        if "status" in data:
            data["status"] = InvoiceStatus(data["status"])
        return cls(**data)
