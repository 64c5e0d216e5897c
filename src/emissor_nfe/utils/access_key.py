from __future__ import annotations

import random
import re
from datetime import datetime

from emissor_nfe.config import BRT, MODELO_NFE
from emissor_nfe.services.exceptions import InvalidKeyInput

UF_CODES = {
    "AC": "12", "AL": "27", "AP": "16", "AM": "13", "BA": "29", "CE": "23",
    "DF": "53", "ES": "32", "GO": "52", "MA": "21", "MT": "51", "MS": "50",
    "MG": "31", "PA": "15", "PB": "25", "PR": "41", "PE": "26", "PI": "22",
    "RJ": "33", "RN": "24", "RS": "43", "RO": "11", "RR": "14", "SC": "42",
    "SP": "35", "SE": "28", "TO": "17",
}

DEFAULT_UF_CODE = "35"

_WEIGHTS = (2, 3, 4, 5, 6, 7, 8, 9)


def uf_code(uf: str | None) -> str:
    """Return the IBGE code for *uf*, falling back to SP for unknown or missing values."""
    if not uf:
        return DEFAULT_UF_CODE
    return UF_CODES.get(uf.strip().upper(), DEFAULT_UF_CODE)


def check_digit(prefix: str) -> int:
    """Mod-11 check digit over the 43-digit key prefix.

    Weights 2..9 cycle from the rightmost digit; remainders 0 and 1 yield 0.
    """
    if not re.fullmatch(r"\d{43}", prefix):
        raise InvalidKeyInput(f"Prefixo da chave deve ter 43 digitos, recebido: '{prefix}'")
    total = sum(
        int(digit) * _WEIGHTS[i % len(_WEIGHTS)] for i, digit in enumerate(reversed(prefix))
    )
    remainder = total % 11
    return 0 if remainder < 2 else 11 - remainder


def random_c_nf() -> str:
    """8-digit numeric code that makes the key unguessable."""
    return f"{random.randint(0, 99_999_999):08d}"


def generate_access_key(
    uf: str | None,
    emitted_at: datetime,
    cnpj: str,
    serie: int,
    numero: int,
    c_nf: str | None = None,
    tp_emis: str = "1",
    modelo: str = MODELO_NFE,
) -> str:
    """Generate the 44-digit NF-e access key.

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9) + tpEmis(1) + cNF(8) + cDV(1)
    """
    if not re.fullmatch(r"\d{14}", cnpj or ""):
        raise InvalidKeyInput(f"CNPJ do emitente deve ter 14 digitos: '{cnpj}'")
    if not 0 <= serie <= 999:
        raise InvalidKeyInput(f"Serie fora da faixa 0-999: {serie}")
    if not 1 <= numero <= 999_999_999:
        raise InvalidKeyInput(f"Numero fora da faixa 1-999999999: {numero}")
    if c_nf is None:
        c_nf = random_c_nf()
    elif not re.fullmatch(r"\d{8}", c_nf):
        raise InvalidKeyInput(f"cNF deve ter 8 digitos: '{c_nf}'")
    if not re.fullmatch(r"\d", tp_emis) or not re.fullmatch(r"\d{2}", modelo):
        raise InvalidKeyInput(f"tpEmis/modelo invalidos: '{tp_emis}'/'{modelo}'")

    if emitted_at.tzinfo is not None:
        emitted_at = emitted_at.astimezone(BRT)
    parts = [
        uf_code(uf),
        emitted_at.strftime("%y%m"),
        cnpj,
        modelo,
        f"{serie:03d}",
        f"{numero:09d}",
        tp_emis,
        c_nf,
    ]
    prefix = "".join(parts)
    return f"{prefix}{check_digit(prefix)}"


def is_valid_access_key(chave: str) -> bool:
    """True when *chave* has 44 digits and a matching check digit."""
    if not re.fullmatch(r"\d{44}", chave or ""):
        return False
    return check_digit(chave[:43]) == int(chave[43])


def split_access_key(chave: str) -> dict[str, str]:
    """Break a 44-digit key into its named fields."""
    if not re.fullmatch(r"\d{44}", chave or ""):
        raise InvalidKeyInput(f"Chave de acesso deve ter 44 digitos: '{chave}'")
    return {
        "cUF": chave[0:2],
        "AAMM": chave[2:6],
        "CNPJ": chave[6:20],
        "mod": chave[20:22],
        "serie": chave[22:25],
        "nNF": chave[25:34],
        "tpEmis": chave[34],
        "cNF": chave[35:43],
        "cDV": chave[43],
    }
