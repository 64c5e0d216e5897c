from __future__ import annotations

from decimal import Decimal

from lxml import etree

from emissor_nfe.models.item import CofinsTax, IcmsTax, PisTax, TaxProfile
from emissor_nfe.services.exceptions import AssemblyError
from emissor_nfe.utils.formatters import format_money

_ZERO = Decimal("0")


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, tag)
    if text is not None:
        el.text = text
    return el


def _sub_money(parent: etree._Element, tag: str, value: Decimal | None) -> None:
    """Append *tag* only when *value* is informed."""
    if value is not None:
        _sub(parent, tag, format_money(value))


def encode_icms(parent: etree._Element, icms: IcmsTax) -> etree._Element:
    """Append the ICMS group: ``ICMSSN<csosn>`` for Simples Nacional, else ``ICMS<cst>``."""
    if bool(icms.csosn) == bool(icms.cst):
        raise AssemblyError("ICMS: informe exatamente um entre CST e CSOSN")

    group = _sub(parent, "ICMS")
    if icms.csosn:
        inner = _sub(group, f"ICMSSN{icms.csosn}")
        _sub(inner, "orig", icms.orig)
        _sub(inner, "CSOSN", icms.csosn)
        _sub_money(inner, "pCredSN", icms.p_cred_sn)
        _sub_money(inner, "vCredICMSSN", icms.v_cred_icms_sn)
        return group

    inner = _sub(group, f"ICMS{icms.cst}")
    _sub(inner, "orig", icms.orig)
    _sub(inner, "CST", icms.cst)
    if icms.mod_bc is not None:
        _sub(inner, "modBC", icms.mod_bc)
    _sub_money(inner, "vBC", icms.v_bc)
    _sub_money(inner, "pICMS", icms.p_icms)
    _sub_money(inner, "vICMS", icms.v_icms)
    return group


def _encode_contribution(
    parent: etree._Element,
    name: str,
    cst: str,
    v_bc: Decimal | None,
    rate: Decimal | None,
    value: Decimal | None,
) -> etree._Element:
    # CST 99 or no calculation base -> "Outr"; the value then defaults to zero.
    group = _sub(parent, name)
    if cst == "99" or v_bc is None:
        inner = _sub(group, f"{name}Outr")
        _sub(inner, "CST", cst)
        _sub_money(inner, "vBC", v_bc)
        _sub_money(inner, f"p{name}", rate)
        _sub(inner, f"v{name}", format_money(value if value is not None else _ZERO))
        return group

    inner = _sub(group, f"{name}Aliq")
    _sub(inner, "CST", cst)
    _sub_money(inner, "vBC", v_bc)
    _sub_money(inner, f"p{name}", rate)
    _sub_money(inner, f"v{name}", value)
    return group


def encode_pis(parent: etree._Element, pis: PisTax) -> etree._Element:
    return _encode_contribution(parent, "PIS", pis.cst, pis.v_bc, pis.p_pis, pis.v_pis)


def encode_cofins(parent: etree._Element, cofins: CofinsTax) -> etree._Element:
    return _encode_contribution(
        parent, "COFINS", cofins.cst, cofins.v_bc, cofins.p_cofins, cofins.v_cofins
    )


def encode_taxes(parent: etree._Element, impostos: TaxProfile) -> etree._Element:
    """Append ``<imposto>`` with ICMS, PIS and COFINS, in that order."""
    imposto = _sub(parent, "imposto")
    encode_icms(imposto, impostos.icms)
    encode_pis(imposto, impostos.pis)
    encode_cofins(imposto, impostos.cofins)
    return imposto
