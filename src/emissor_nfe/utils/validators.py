from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from emissor_nfe.services.exceptions import ValidationError

if TYPE_CHECKING:
    from emissor_nfe.models.party import Address
    from emissor_nfe.models.request import InvoiceRequest

_VALID_CST_PIS_COFINS = frozenset({
    "01", "02", "03", "04", "05", "06", "07", "08", "09",
    "49", "50", "51", "52", "53", "54", "55", "56",
    "60", "61", "62", "63", "64", "65", "66", "67",
    "70", "71", "72", "73", "74", "75",
    "98", "99",
})

_VALID_CST_ICMS = frozenset({
    "00", "02", "10", "15", "20", "30", "40", "41", "50", "51", "53", "60", "61", "70", "90",
})

_VALID_CSOSN = frozenset({"101", "102", "103", "201", "202", "203", "300", "400", "500", "900"})

_VALID_T_PAG = frozenset({
    "01", "02", "03", "04", "05", "10", "11", "12", "13", "14", "15", "90", "99",
})

_VALID_MOD_FRETE = frozenset({"0", "1", "2", "3", "4", "9"})

_CHOICES = {
    "tpNF": frozenset({"0", "1"}),
    "idDest": frozenset({"1", "2", "3"}),
    "tpAmb": frozenset({"1", "2"}),
    "finNFe": frozenset({"1", "2", "3", "4"}),
    "indFinal": frozenset({"0", "1"}),
    "indPres": frozenset({"0", "1", "2", "3", "4", "5", "9"}),
    "CRT": frozenset({"1", "2", "3"}),
    "indIEDest": frozenset({"1", "2", "9"}),
    "indPag": frozenset({"0", "1"}),
    "indTot": frozenset({"0", "1"}),
    "orig": frozenset({"0", "1", "2", "3", "4", "5", "6", "7", "8"}),
}


def validate_monetary(value: str) -> str:
    """Validate and normalize a monetary value string.

    Returns the value with 2 decimal places.
    Raises ValidationError for invalid or negative values.
    """
    try:
        d = Decimal(value)
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValidationError(f"Valor numerico invalido: '{value}'") from None
    if d < 0:
        raise ValidationError(f"Valor nao pode ser negativo: '{value}'")
    return f"{d:.2f}"


def validate_choice(field: str, value: str) -> str:
    """Validate a single-code field (tpNF, idDest, ...) against its enumeration."""
    if value not in _CHOICES[field]:
        raise ValidationError(f"{field}: codigo invalido '{value}'")
    return value


def validate_cnpj(value: str) -> str:
    """Validate CNPJ: exactly 14 numeric digits."""
    if not re.fullmatch(r"\d{14}", value or ""):
        raise ValidationError(f"CNPJ: deve ter 14 digitos numericos, recebido '{value}'")
    return value


def validate_cpf(value: str) -> str:
    """Validate CPF: exactly 11 numeric digits."""
    if not re.fullmatch(r"\d{11}", value or ""):
        raise ValidationError(f"CPF: deve ter 11 digitos numericos, recebido '{value}'")
    return value


def validate_uf(value: str) -> str:
    """Validate UF shape: 2 uppercase letters. Unknown states are tolerated."""
    if not re.fullmatch(r"[A-Z]{2}", value or ""):
        raise ValidationError(f"UF: deve ter 2 letras maiusculas, recebido '{value}'")
    return value


def validate_cod_municipio(value: str) -> str:
    """Validate cMun: exactly 7 numeric digits (IBGE)."""
    if not re.fullmatch(r"\d{7}", value or ""):
        raise ValidationError(f"cMun: deve ter 7 digitos numericos, recebido '{value}'")
    return value


def validate_ncm(value: str) -> str:
    """Validate NCM: 8 digits, or 2 digits for services/gender codes."""
    if not re.fullmatch(r"\d{2}|\d{8}", value or ""):
        raise ValidationError(f"NCM: deve ter 8 digitos numericos, recebido '{value}'")
    return value


def validate_cfop(value: str) -> str:
    """Validate CFOP: 4 digits starting with 1-3 (entradas) or 5-7 (saidas)."""
    if not re.fullmatch(r"[1235-7]\d{3}", value or ""):
        raise ValidationError(f"CFOP: codigo invalido '{value}'")
    return value


def validate_cst_icms(value: str) -> str:
    if value not in _VALID_CST_ICMS:
        raise ValidationError(f"CST ICMS: codigo invalido '{value}'")
    return value


def validate_csosn(value: str) -> str:
    if value not in _VALID_CSOSN:
        raise ValidationError(f"CSOSN: codigo invalido '{value}'")
    return value


def validate_cst_pis_cofins(value: str) -> str:
    """Validate CST PIS/COFINS against known valid codes."""
    if value not in _VALID_CST_PIS_COFINS:
        raise ValidationError(f"CST PIS/COFINS: codigo invalido '{value}'")
    return value


def validate_t_pag(value: str) -> str:
    if value not in _VALID_T_PAG:
        raise ValidationError(f"tPag: meio de pagamento invalido '{value}'")
    return value


def validate_mod_frete(value: str) -> str:
    if value not in _VALID_MOD_FRETE:
        raise ValidationError(f"modFrete: modalidade invalida '{value}'")
    return value


def validate_access_key(value: str) -> str:
    """Validate an NF-e access key: exactly 44 numeric digits (separators stripped)."""
    digits = re.sub(r"\D", "", value or "")
    if len(digits) != 44:
        raise ValidationError(
            f"Chave de acesso invalida. Deve ter 44 digitos. Recebido: {len(digits)} digitos"
        )
    return digits


def validate_justification(value: str) -> str:
    """Validate a cancel/void justification: 15 to 255 characters after trimming."""
    text = (value or "").strip()
    if not 15 <= len(text) <= 255:
        raise ValidationError("Justificativa: deve ter entre 15 e 255 caracteres")
    return text


def validate_percent(value: str) -> str:
    """Validate and normalize a percentage value (0.00-100.00)."""
    try:
        d = Decimal(value)
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValidationError(f"Percentual invalido: '{value}'") from None
    if d < 0 or d > 100:
        raise ValidationError("Percentual deve estar entre 0.00 e 100.00")
    return f"{d:.2f}"


def validate_request(request: InvoiceRequest) -> InvoiceRequest:
    """Check codes and shapes of a parsed request before it reaches the assembler.

    Raises ValidationError on the first problem found. Structural emptiness
    (no items, no payments) is left to the assembler, which owns that rule.
    """
    validate_choice("tpNF", request.tp_nf)
    validate_choice("idDest", request.id_dest)
    validate_choice("tpAmb", request.tp_amb)
    validate_choice("finNFe", request.fin_nfe)
    validate_choice("indFinal", request.ind_final)
    validate_choice("indPres", request.ind_pres)
    if not 0 <= request.serie <= 999:
        raise ValidationError(f"serie: fora da faixa 0-999 ({request.serie})")
    if request.numero is not None and not 1 <= request.numero <= 999_999_999:
        raise ValidationError(f"numero: fora da faixa 1-999999999 ({request.numero})")

    emit = request.emitente
    validate_cnpj(emit.cnpj)
    validate_choice("CRT", emit.crt)
    _validate_address(emit.endereco)

    dest = request.destinatario
    if bool(dest.cnpj) == bool(dest.cpf):
        raise ValidationError("destinatario: informe CNPJ ou CPF (apenas um)")
    if dest.cnpj:
        validate_cnpj(dest.cnpj)
    else:
        validate_cpf(dest.cpf or "")
    validate_choice("indIEDest", dest.ind_ie_dest)
    _validate_address(dest.endereco)

    for item in request.produtos:
        validate_ncm(item.ncm)
        validate_cfop(item.cfop)
        validate_choice("indTot", item.ind_tot)
        for value in (item.quantidade, item.valor_unitario, item.valor_total):
            validate_monetary(str(value))
        icms = item.impostos.icms
        validate_choice("orig", icms.orig)
        if icms.cst is not None:
            validate_cst_icms(icms.cst)
        if icms.csosn is not None:
            validate_csosn(icms.csosn)
        for rate in (icms.p_icms, icms.p_cred_sn, item.impostos.pis.p_pis,
                     item.impostos.cofins.p_cofins):
            if rate is not None:
                validate_percent(str(rate))
        validate_cst_pis_cofins(item.impostos.pis.cst)
        validate_cst_pis_cofins(item.impostos.cofins.cst)

    for payment in request.pagamentos:
        validate_t_pag(payment.t_pag)
        validate_choice("indPag", payment.ind_pag)
        validate_monetary(str(payment.valor))

    if request.transporte is not None:
        validate_mod_frete(request.transporte.mod_frete)
    return request


def _validate_address(endereco: Address) -> None:
    validate_uf(endereco.uf)
    validate_cod_municipio(endereco.cod_municipio)
