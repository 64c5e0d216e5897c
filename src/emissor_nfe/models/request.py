from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from emissor_nfe.config import BRT
from emissor_nfe.models.fields import code, decimal, integer, optional_text, required, text
from emissor_nfe.models.item import LineItem
from emissor_nfe.models.party import Issuer, Recipient
from emissor_nfe.services.exceptions import ValidationError


@dataclass(frozen=True)
class Payment:
    t_pag: str
    valor: Decimal
    ind_pag: str = "0"  # 0 = a vista, 1 = a prazo

    @classmethod
    def from_dict(cls, d: dict, where: str = "pagamento") -> Payment:
        return cls(
            t_pag=code(d, "tPag", where, width=2),
            valor=decimal(d, "vPag", where),
            ind_pag=code(d, "indPag", where, default="0"),
        )


@dataclass(frozen=True)
class Transport:
    mod_frete: str = "9"  # 9 = sem transporte

    @classmethod
    def from_dict(cls, d: dict) -> Transport:
        return cls(mod_frete=code(d, "modFrete", "transporte", default="9"))


def parse_emission_datetime(value: str | datetime) -> datetime:
    """Parse dataEmissao; naive values are taken as Brasilia time."""
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise ValidationError(f"dataEmissao: data/hora invalida '{value}'") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=BRT)
    return dt


@dataclass(frozen=True)
class InvoiceRequest:
    """Everything needed to assemble one NF-e. Pure data."""

    natureza_operacao: str
    serie: int
    numero: int | None
    tp_nf: str  # 0 = entrada, 1 = saida
    id_dest: str  # 1 = interna, 2 = interestadual, 3 = exterior
    fin_nfe: str
    ind_final: str
    ind_pres: str
    emitente: Issuer
    destinatario: Recipient
    produtos: tuple[LineItem, ...]
    pagamentos: tuple[Payment, ...]
    tp_amb: str = "2"  # 1 = producao, 2 = homologacao
    data_emissao: datetime | None = None
    transporte: Transport | None = None
    inf_cpl: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceRequest:
        """Create a request from the gateway-shaped dict (naturezaOperacao, emitente, ...)."""
        where = "nfe"
        produtos = required(d, "produtos", where)
        pagamentos = required(d, "pagamentos", where)
        if not isinstance(produtos, list) or not isinstance(pagamentos, list):
            raise ValidationError("nfe.produtos e nfe.pagamentos devem ser listas")
        numero = d.get("numero")
        data_emissao = d.get("dataEmissao")
        transporte = d.get("transporte")
        return cls(
            natureza_operacao=text(d, "naturezaOperacao", where),
            serie=integer(d, "serie", where),
            numero=integer(d, "numero", where) if numero not in (None, "") else None,
            tp_nf=code(d, "tpNF", where),
            id_dest=code(d, "idDest", where),
            fin_nfe=code(d, "finNFe", where),
            ind_final=code(d, "indFinal", where),
            ind_pres=code(d, "indPres", where),
            emitente=Issuer.from_dict(required(d, "emitente", where)),
            destinatario=Recipient.from_dict(required(d, "destinatario", where)),
            produtos=tuple(
                LineItem.from_dict(p, f"produtos[{i}]") for i, p in enumerate(produtos)
            ),
            pagamentos=tuple(
                Payment.from_dict(p, f"pagamentos[{i}]") for i, p in enumerate(pagamentos)
            ),
            tp_amb=code(d, "tpAmb", where, default="2"),
            data_emissao=parse_emission_datetime(data_emissao) if data_emissao else None,
            transporte=Transport.from_dict(transporte) if transporte else None,
            inf_cpl=optional_text(d, "infCpl"),
        )
