from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from emissor_nfe.models.fields import (
    code,
    decimal,
    optional_decimal,
    optional_text,
    required,
    text,
)


@dataclass(frozen=True)
class IcmsTax:
    """ICMS block: exactly one of ``cst`` (regime normal) or ``csosn`` (Simples Nacional)."""

    orig: str
    cst: str | None = None
    csosn: str | None = None
    mod_bc: str | None = None
    v_bc: Decimal | None = None
    p_icms: Decimal | None = None
    v_icms: Decimal | None = None
    p_cred_sn: Decimal | None = None
    v_cred_icms_sn: Decimal | None = None

    @classmethod
    def from_dict(cls, d: dict, where: str = "ICMS") -> IcmsTax:
        cst = optional_text(d, "CST", where)
        csosn = optional_text(d, "CSOSN", where)
        return cls(
            orig=code(d, "orig", where),
            cst=cst.zfill(2) if cst else None,
            csosn=csosn,
            mod_bc=optional_text(d, "modBC"),
            v_bc=optional_decimal(d, "vBC", where),
            p_icms=optional_decimal(d, "pICMS", where),
            v_icms=optional_decimal(d, "vICMS", where),
            p_cred_sn=optional_decimal(d, "pCredSN", where),
            v_cred_icms_sn=optional_decimal(d, "vCredICMSSN", where),
        )


@dataclass(frozen=True)
class PisTax:
    cst: str
    v_bc: Decimal | None = None
    p_pis: Decimal | None = None
    v_pis: Decimal | None = None

    @classmethod
    def from_dict(cls, d: dict, where: str = "PIS") -> PisTax:
        return cls(
            cst=code(d, "CST", where, width=2),
            v_bc=optional_decimal(d, "vBC", where),
            p_pis=optional_decimal(d, "pPIS", where),
            v_pis=optional_decimal(d, "vPIS", where),
        )


@dataclass(frozen=True)
class CofinsTax:
    cst: str
    v_bc: Decimal | None = None
    p_cofins: Decimal | None = None
    v_cofins: Decimal | None = None

    @classmethod
    def from_dict(cls, d: dict, where: str = "COFINS") -> CofinsTax:
        return cls(
            cst=code(d, "CST", where, width=2),
            v_bc=optional_decimal(d, "vBC", where),
            p_cofins=optional_decimal(d, "pCOFINS", where),
            v_cofins=optional_decimal(d, "vCOFINS", where),
        )


@dataclass(frozen=True)
class TaxProfile:
    icms: IcmsTax
    pis: PisTax
    cofins: CofinsTax

    @classmethod
    def from_dict(cls, d: dict, where: str = "imposto") -> TaxProfile:
        return cls(
            icms=IcmsTax.from_dict(required(d, "ICMS", where), f"{where}.ICMS"),
            pis=PisTax.from_dict(required(d, "PIS", where), f"{where}.PIS"),
            cofins=CofinsTax.from_dict(required(d, "COFINS", where), f"{where}.COFINS"),
        )


@dataclass(frozen=True)
class LineItem:
    """One ``det`` entry: the product and its taxes."""

    codigo: str
    descricao: str
    ncm: str
    cfop: str
    unidade: str
    quantidade: Decimal
    valor_unitario: Decimal
    valor_total: Decimal
    impostos: TaxProfile
    ean: str = "SEM GTIN"
    ean_trib: str | None = None
    unidade_trib: str | None = None
    quantidade_trib: Decimal | None = None
    valor_unitario_trib: Decimal | None = None
    ind_tot: str = "1"

    @classmethod
    def from_dict(cls, d: dict, where: str = "produto") -> LineItem:
        return cls(
            codigo=text(d, "cProd", where),
            descricao=text(d, "xProd", where),
            ncm=text(d, "NCM", where),
            cfop=text(d, "CFOP", where),
            unidade=text(d, "uCom", where),
            quantidade=decimal(d, "qCom", where),
            valor_unitario=decimal(d, "vUnCom", where),
            valor_total=decimal(d, "vProd", where),
            impostos=TaxProfile.from_dict(required(d, "imposto", where), f"{where}.imposto"),
            ean=optional_text(d, "cEAN") or "SEM GTIN",
            ean_trib=optional_text(d, "cEANTrib"),
            unidade_trib=optional_text(d, "uTrib"),
            quantidade_trib=optional_decimal(d, "qTrib", where),
            valor_unitario_trib=optional_decimal(d, "vUnTrib", where),
            ind_tot=code(d, "indTot", where, default="1"),
        )
