from __future__ import annotations

from dataclasses import dataclass

from emissor_nfe.models.fields import code, optional_text, required, text


@dataclass(frozen=True)
class Address:
    logradouro: str
    numero: str
    bairro: str
    cod_municipio: str
    municipio: str
    uf: str
    cep: str
    complemento: str | None = None
    cod_pais: str = "1058"
    pais: str = "BRASIL"
    fone: str | None = None

    @classmethod
    def from_dict(cls, d: dict, where: str = "endereco") -> Address:
        return cls(
            logradouro=text(d, "xLgr", where),
            numero=text(d, "nro", where),
            bairro=text(d, "xBairro", where),
            cod_municipio=text(d, "cMun", where),
            municipio=text(d, "xMun", where),
            uf=text(d, "UF", where).upper(),
            cep=text(d, "CEP", where),
            complemento=optional_text(d, "xCpl"),
            cod_pais=optional_text(d, "cPais") or "1058",
            pais=optional_text(d, "xPais") or "BRASIL",
            fone=optional_text(d, "fone"),
        )


@dataclass(frozen=True)
class Issuer:
    """Emitente: the company issuing the NF-e."""

    cnpj: str
    razao_social: str
    endereco: Address
    ie: str
    crt: str  # 1 = Simples Nacional, 2 = Simples excesso sublimite, 3 = Regime Normal
    nome_fantasia: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> Issuer:
        return cls(
            cnpj=text(d, "CNPJ", "emitente"),
            razao_social=text(d, "xNome", "emitente"),
            endereco=Address.from_dict(required(d, "endereco", "emitente"), "emitente.endereco"),
            ie=text(d, "IE", "emitente"),
            crt=code(d, "CRT", "emitente"),
            nome_fantasia=optional_text(d, "xFant"),
        )


@dataclass(frozen=True)
class Recipient:
    """Destinatario: company (CNPJ) or individual (CPF) receiving the goods."""

    nome: str
    endereco: Address
    ind_ie_dest: str  # 1 = contribuinte, 2 = isento, 9 = nao contribuinte
    cnpj: str | None = None
    cpf: str | None = None
    ie: str | None = None
    email: str | None = None

    @property
    def documento(self) -> str:
        return self.cnpj or self.cpf or ""

    @classmethod
    def from_dict(cls, d: dict) -> Recipient:
        return cls(
            nome=text(d, "xNome", "destinatario"),
            endereco=Address.from_dict(
                required(d, "endereco", "destinatario"), "destinatario.endereco"
            ),
            ind_ie_dest=code(d, "indIEDest", "destinatario"),
            cnpj=optional_text(d, "CNPJ"),
            cpf=optional_text(d, "CPF"),
            ie=optional_text(d, "IE"),
            email=optional_text(d, "email"),
        )


@dataclass(frozen=True)
class TechnicalContact:
    """Responsavel tecnico: the software house behind the emission system."""

    cnpj: str
    contato: str
    email: str
    fone: str

    @classmethod
    def from_dict(cls, d: dict) -> TechnicalContact:
        return cls(
            cnpj=text(d, "CNPJ", "infRespTec"),
            contato=text(d, "xContato", "infRespTec"),
            email=text(d, "email", "infRespTec"),
            fone=text(d, "fone", "infRespTec"),
        )
