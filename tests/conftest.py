from __future__ import annotations

import copy
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from emissor_nfe.config import BRT
from emissor_nfe.models.request import InvoiceRequest
from emissor_nfe.services.lifecycle import LifecycleManager
from emissor_nfe.services.processor import FakeDocumentProcessor, ProcessorGuard
from emissor_nfe.utils.registry import MemoryInvoiceRepository

FIXED_NOW = datetime(2024, 5, 10, 14, 30, 0, tzinfo=BRT)

# Key for SP / 2405 / 12345678000199 / 55 / serie 1 / nNF 1 / tpEmis 1 / cNF 12345678
KEY_NNF_1 = "35240512345678000199550010000000011123456780"
KEY_NNF_2 = "35240512345678000199550010000000021123456788"


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath."""
    found = el.find(xpath)
    return found.text if found is not None else None


def tags(el: etree._Element | None) -> list[str]:
    """Child tag names of *el*, in document order."""
    assert el is not None
    return [child.tag for child in el]


# --- Request fixtures ---


@pytest.fixture
def emitente_dict() -> dict:
    return {
        "CNPJ": "12345678000199",
        "xNome": "EMPRESA EXEMPLO LTDA",
        "xFant": "EXEMPLO",
        "IE": "123456789012",
        "CRT": "1",
        "endereco": {
            "xLgr": "RUA DAS FLORES",
            "nro": "100",
            "xBairro": "CENTRO",
            "cMun": "3550308",
            "xMun": "SAO PAULO",
            "UF": "SP",
            "CEP": "01001000",
            "fone": "1133334444",
        },
    }


@pytest.fixture
def destinatario_dict() -> dict:
    return {
        "CPF": "12345678909",
        "xNome": "CONSUMIDOR TESTE",
        "indIEDest": "9",
        "email": "cliente@example.com",
        "endereco": {
            "xLgr": "AVENIDA PAULISTA",
            "nro": "1000",
            "xCpl": "CONJ 12",
            "xBairro": "BELA VISTA",
            "cMun": "3550308",
            "xMun": "SAO PAULO",
            "UF": "SP",
            "CEP": "01310100",
        },
    }


@pytest.fixture
def produto_dict() -> dict:
    return {
        "cProd": "001",
        "xProd": "PRODUTO TESTE",
        "NCM": "61091000",
        "CFOP": "5102",
        "uCom": "UN",
        "qCom": 1,
        "vUnCom": 100,
        "vProd": 100,
        "imposto": {
            "ICMS": {"orig": "0", "CSOSN": "102"},
            "PIS": {"CST": "99"},
            "COFINS": {"CST": "99"},
        },
    }


@pytest.fixture
def request_dict(emitente_dict, destinatario_dict, produto_dict) -> dict:
    return {
        "naturezaOperacao": "VENDA DE MERCADORIA",
        "serie": 1,
        "numero": 1,
        "tpNF": "1",
        "idDest": "1",
        "tpAmb": "2",
        "finNFe": "1",
        "indFinal": "1",
        "indPres": "1",
        "emitente": emitente_dict,
        "destinatario": destinatario_dict,
        "produtos": [produto_dict],
        "pagamentos": [{"tPag": "01", "vPag": 100}],
    }


@pytest.fixture
def invoice_request(request_dict) -> InvoiceRequest:
    return InvoiceRequest.from_dict(request_dict)


@pytest.fixture
def make_request(request_dict):
    """Build a request dict variant: ``make_request(numero=7, infCpl="x")``."""

    def _make(**changes) -> dict:
        data = copy.deepcopy(request_dict)
        data.update(changes)
        return data

    return _make


# --- Processor / lifecycle fixtures ---


@pytest.fixture
def processor() -> FakeDocumentProcessor:
    return FakeDocumentProcessor()


@pytest.fixture
def guard(processor):
    g = ProcessorGuard(processor, timeout=5)
    yield g
    g.close()


@pytest.fixture
def repository() -> MemoryInvoiceRepository:
    return MemoryInvoiceRepository()


@pytest.fixture
def manager(repository, guard) -> LifecycleManager:
    return LifecycleManager(repository, guard, sleep_func=lambda _: None)


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "EMPRESA EXEMPLO LTDA:12345678000199"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    password = b"testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, emitente_dict):
    import yaml

    cfg = tmp_path / "config"
    cfg.mkdir()
    (cfg / "emitter.yaml").write_text(yaml.dump(emitente_dict))
    return cfg
