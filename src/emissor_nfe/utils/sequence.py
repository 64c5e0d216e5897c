"""NF-e numbering per environment and series.

``sequence.json`` maps ``env -> serie -> last used nNF``.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock

from emissor_nfe import config as _config


def _sequence_file() -> Path:
    return _config.get_data_dir() / "sequence.json"


@contextmanager
def _locked() -> Iterator[None]:
    """Hold an exclusive file lock during sequence read-modify-write."""
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(sf.with_suffix(".lock"))
    with lock:
        yield


def _load() -> dict[str, dict[str, int]]:
    sf = _sequence_file()
    if not sf.exists():
        return {"homologacao": {}, "producao": {}}
    return json.loads(sf.read_text())


def _save(data: dict[str, dict[str, int]]) -> None:
    sf = _sequence_file()
    sf.parent.mkdir(parents=True, exist_ok=True)
    tmp = sf.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, sf)


def current_numero(env: str = "homologacao", serie: int = 1) -> int:
    with _locked():
        return _load().get(env, {}).get(str(serie), 0)


def next_numero(env: str = "homologacao", serie: int = 1) -> int:
    """Reserve and persist the next nNF for *env*/*serie*."""
    with _locked():
        data = _load()
        numbers = data.setdefault(env, {})
        numbers[str(serie)] = numbers.get(str(serie), 0) + 1
        _save(data)
        return numbers[str(serie)]


def peek_next_numero(env: str = "homologacao", serie: int = 1) -> int:
    """Return the next nNF without persisting it."""
    with _locked():
        return _load().get(env, {}).get(str(serie), 0) + 1


def set_numero(value: int, env: str = "homologacao", serie: int = 1) -> None:
    with _locked():
        data = _load()
        data.setdefault(env, {})[str(serie)] = value
        _save(data)
