from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from lxml import etree

from emissor_nfe.config import (
    BRT,
    DEFAULT_RESP_TEC,
    EMISSION_BACKDATE,
    MODELO_NFE,
    NFE_NS,
    NFE_VERSAO,
)
from emissor_nfe.models.item import LineItem
from emissor_nfe.models.party import Address, Issuer, Recipient, TechnicalContact
from emissor_nfe.models.request import InvoiceRequest, Payment
from emissor_nfe.services.exceptions import AssemblyError
from emissor_nfe.services.tax_encoder import _sub, encode_taxes
from emissor_nfe.utils.access_key import generate_access_key, uf_code
from emissor_nfe.utils.formatters import format_money, format_quantity, format_unit_price

NSMAP = {None: NFE_NS}

DHEMI_FORMAT = "%Y-%m-%dT%H:%M:%S-03:00"

# ICMSTot fields this core never computes; always rendered as 0.00.
_ZERO_TOTALS_BEFORE_PROD = ("vICMSDeson", "vFCP", "vBCST", "vST", "vFCPST", "vFCPSTRet")
_ZERO_TOTALS_AFTER_PROD = ("vFrete", "vSeg", "vDesc", "vII", "vIPI", "vIPIDevol")


@dataclass(frozen=True)
class Totals:
    v_bc: Decimal
    v_icms: Decimal
    v_prod: Decimal
    v_pis: Decimal
    v_cofins: Decimal

    @property
    def v_nf(self) -> Decimal:
        return self.v_prod


@dataclass(frozen=True)
class AssembledNFe:
    """Result of assembly: the document tree, its text, key and derived values."""

    element: etree._Element
    xml: str
    chave: str
    dh_emi: str
    totals: Totals


def _now_brt() -> datetime:
    return datetime.now(BRT) - EMISSION_BACKDATE


def _sum(values: Iterable[Decimal | None]) -> Decimal:
    return sum((v for v in values if v is not None), Decimal("0"))


def compute_totals(items: Iterable[LineItem]) -> Totals:
    """Aggregate ICMSTot values from the items; uninformed tax values count as zero."""
    items = list(items)
    return Totals(
        v_bc=_sum(i.impostos.icms.v_bc for i in items),
        v_icms=_sum(i.impostos.icms.v_icms for i in items),
        v_prod=_sum(i.valor_total for i in items),
        v_pis=_sum(i.impostos.pis.v_pis for i in items),
        v_cofins=_sum(i.impostos.cofins.v_cofins for i in items),
    )


def _address(parent: etree._Element, tag: str, endereco: Address, with_fone: bool) -> None:
    ender = _sub(parent, tag)
    _sub(ender, "xLgr", endereco.logradouro)
    _sub(ender, "nro", endereco.numero)
    if endereco.complemento:
        _sub(ender, "xCpl", endereco.complemento)
    _sub(ender, "xBairro", endereco.bairro)
    _sub(ender, "cMun", endereco.cod_municipio)
    _sub(ender, "xMun", endereco.municipio)
    _sub(ender, "UF", endereco.uf)
    _sub(ender, "CEP", endereco.cep)
    _sub(ender, "cPais", endereco.cod_pais)
    _sub(ender, "xPais", endereco.pais)
    if with_fone and endereco.fone:
        _sub(ender, "fone", endereco.fone)


def _emit(parent: etree._Element, emitente: Issuer) -> None:
    emit = _sub(parent, "emit")
    _sub(emit, "CNPJ", emitente.cnpj)
    _sub(emit, "xNome", emitente.razao_social)
    if emitente.nome_fantasia:
        _sub(emit, "xFant", emitente.nome_fantasia)
    _address(emit, "enderEmit", emitente.endereco, with_fone=True)
    _sub(emit, "IE", emitente.ie)
    _sub(emit, "CRT", emitente.crt)


def _dest(parent: etree._Element, destinatario: Recipient) -> None:
    dest = _sub(parent, "dest")
    if destinatario.cnpj:
        _sub(dest, "CNPJ", destinatario.cnpj)
    if destinatario.cpf:
        _sub(dest, "CPF", destinatario.cpf)
    _sub(dest, "xNome", destinatario.nome)
    _address(dest, "enderDest", destinatario.endereco, with_fone=False)
    _sub(dest, "indIEDest", destinatario.ind_ie_dest)
    if destinatario.ie:
        _sub(dest, "IE", destinatario.ie)
    if destinatario.email:
        _sub(dest, "email", destinatario.email)


def _det(parent: etree._Element, n_item: int, item: LineItem) -> None:
    det = _sub(parent, "det")
    det.set("nItem", str(n_item))

    prod = _sub(det, "prod")
    _sub(prod, "cProd", item.codigo)
    _sub(prod, "cEAN", item.ean)
    _sub(prod, "xProd", item.descricao)
    _sub(prod, "NCM", item.ncm)
    _sub(prod, "CFOP", item.cfop)
    _sub(prod, "uCom", item.unidade)
    _sub(prod, "qCom", format_quantity(item.quantidade))
    _sub(prod, "vUnCom", format_unit_price(item.valor_unitario))
    _sub(prod, "vProd", format_money(item.valor_total))
    _sub(prod, "cEANTrib", item.ean_trib or item.ean)
    _sub(prod, "uTrib", item.unidade_trib or item.unidade)
    _sub(prod, "qTrib", format_quantity(item.quantidade_trib or item.quantidade))
    _sub(prod, "vUnTrib", format_unit_price(item.valor_unitario_trib or item.valor_unitario))
    _sub(prod, "indTot", item.ind_tot)

    encode_taxes(det, item.impostos)


def _total(parent: etree._Element, totals: Totals) -> None:
    icms_tot = _sub(_sub(parent, "total"), "ICMSTot")
    _sub(icms_tot, "vBC", format_money(totals.v_bc))
    _sub(icms_tot, "vICMS", format_money(totals.v_icms))
    for tag in _ZERO_TOTALS_BEFORE_PROD:
        _sub(icms_tot, tag, "0.00")
    _sub(icms_tot, "vProd", format_money(totals.v_prod))
    for tag in _ZERO_TOTALS_AFTER_PROD:
        _sub(icms_tot, tag, "0.00")
    _sub(icms_tot, "vPIS", format_money(totals.v_pis))
    _sub(icms_tot, "vCOFINS", format_money(totals.v_cofins))
    _sub(icms_tot, "vOutro", "0.00")
    _sub(icms_tot, "vNF", format_money(totals.v_nf))


def _pag(parent: etree._Element, pagamentos: Iterable[Payment]) -> None:
    pag = _sub(parent, "pag")
    for payment in pagamentos:
        det_pag = _sub(pag, "detPag")
        _sub(det_pag, "indPag", payment.ind_pag)
        _sub(det_pag, "tPag", payment.t_pag)
        _sub(det_pag, "vPag", format_money(payment.valor))


def _resp_tec(parent: etree._Element, resp_tec: TechnicalContact) -> None:
    resp = _sub(parent, "infRespTec")
    _sub(resp, "CNPJ", resp_tec.cnpj)
    _sub(resp, "xContato", resp_tec.contato)
    _sub(resp, "email", resp_tec.email)
    _sub(resp, "fone", resp_tec.fone)


def check_structure(request: InvoiceRequest) -> None:
    """Raise AssemblyError for requests that can never be assembled."""
    if not request.produtos:
        raise AssemblyError("NF-e sem produtos: informe ao menos um item")
    if not request.pagamentos:
        raise AssemblyError("NF-e sem pagamentos: informe ao menos um detPag")
    for n_item, item in enumerate(request.produtos, start=1):
        icms = item.impostos.icms
        if bool(icms.csosn) == bool(icms.cst):
            raise AssemblyError(f"Item {n_item}: ICMS exige exatamente um entre CST e CSOSN")


def build_nfe(
    request: InvoiceRequest,
    *,
    now: datetime | None = None,
    c_nf: str | None = None,
    resp_tec: TechnicalContact | None = None,
) -> AssembledNFe:
    """Assemble the NF-e document for *request*.

    The emission instant is ``request.data_emissao`` when set, else *now*
    (default: current Brasilia time minus two minutes). The access key's AAMM
    is taken from that same instant.
    """
    check_structure(request)
    if request.numero is None:
        raise AssemblyError("NF-e sem numero: reserve um numero antes de montar")

    emitted_at = request.data_emissao or now or _now_brt()
    emitted_at = emitted_at.astimezone(BRT) if emitted_at.tzinfo else emitted_at
    dh_emi = emitted_at.strftime(DHEMI_FORMAT)

    emitente = request.emitente
    chave = generate_access_key(
        uf=emitente.endereco.uf,
        emitted_at=emitted_at,
        cnpj=emitente.cnpj,
        serie=request.serie,
        numero=request.numero,
        c_nf=c_nf,
    )
    totals = compute_totals(request.produtos)
    if resp_tec is None:
        resp_tec = TechnicalContact.from_dict(DEFAULT_RESP_TEC)

    nfe = etree.Element("NFe", nsmap=NSMAP)  # type: ignore[arg-type]  # lxml stubs don't model None key for default ns
    inf = _sub(nfe, "infNFe")
    inf.set("Id", f"NFe{chave}")
    inf.set("versao", NFE_VERSAO)

    ide = _sub(inf, "ide")
    _sub(ide, "cUF", uf_code(emitente.endereco.uf))
    _sub(ide, "cNF", chave[35:43])
    _sub(ide, "natOp", request.natureza_operacao)
    _sub(ide, "mod", MODELO_NFE)
    _sub(ide, "serie", str(request.serie))
    _sub(ide, "nNF", str(request.numero))
    _sub(ide, "dhEmi", dh_emi)
    _sub(ide, "tpNF", request.tp_nf)
    _sub(ide, "idDest", request.id_dest)
    _sub(ide, "cMunFG", emitente.endereco.cod_municipio)
    _sub(ide, "tpImp", "1")
    _sub(ide, "tpEmis", "1")
    _sub(ide, "cDV", chave[43])
    _sub(ide, "tpAmb", request.tp_amb)
    _sub(ide, "finNFe", request.fin_nfe)
    _sub(ide, "indFinal", request.ind_final)
    _sub(ide, "indPres", request.ind_pres)
    _sub(ide, "procEmi", "0")
    _sub(ide, "verProc", "1.0")

    _emit(inf, emitente)
    _dest(inf, request.destinatario)
    for n_item, item in enumerate(request.produtos, start=1):
        _det(inf, n_item, item)
    _total(inf, totals)

    transp = _sub(inf, "transp")
    _sub(transp, "modFrete", request.transporte.mod_frete if request.transporte else "9")

    _pag(inf, request.pagamentos)

    if request.inf_cpl:
        _sub(_sub(inf, "infAdic"), "infCpl", request.inf_cpl)

    _resp_tec(inf, resp_tec)

    xml = etree.tostring(nfe, xml_declaration=True, encoding="UTF-8").decode("utf-8")
    return AssembledNFe(element=nfe, xml=xml, chave=chave, dh_emi=dh_emi, totals=totals)
