"""Document processor boundary.

The processor (a native NF-e library in production) signs, validates and
transmits documents. It keeps a single mutable slot of loaded documents, so
every load -> ... -> clear sequence must run alone. :class:`ProcessorGuard`
enforces that and puts a deadline on each call.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Protocol, TypeVar

from emissor_nfe.config import PROCESSOR_TIMEOUT
from emissor_nfe.services.exceptions import (
    NFeError,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailable,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class DocumentProcessor(Protocol):
    def load(self, text: str) -> None: ...

    def sign(self) -> None: ...

    def validate(self) -> None: ...

    def get_text(self, index: int = 0) -> str: ...

    def submit(self, lot: int, print_: bool, synchronous: bool, compressed: bool) -> str: ...

    def query_status(self, chave: str, extract_events: bool = True) -> str: ...

    def cancel(self, chave: str, justification: str, cnpj: str, lot: int) -> str: ...

    def void_range(
        self,
        cnpj: str,
        justification: str,
        year: int,
        modelo: int,
        serie: int,
        first: int,
        last: int,
    ) -> str: ...

    def render_printable(self) -> str | None: ...

    def clear(self) -> None: ...

    def service_status(self) -> str: ...


class ProcessorSession:
    """Handle for one exclusive run of processor operations.

    Only valid inside :meth:`ProcessorGuard.session`.
    """

    def __init__(self, guard: ProcessorGuard, timeout: float) -> None:
        self._guard = guard
        self._timeout = timeout
        self._open = True

    def _call(self, op: str, *args: Any) -> Any:
        if not self._open:
            raise ProcessorUnavailable(f"Sessao do processador encerrada ({op})")
        return self._guard._execute(op, args, self._timeout)

    def load(self, text: str) -> None:
        self._call("load", text)

    def sign(self) -> None:
        self._call("sign")

    def validate(self) -> None:
        self._call("validate")

    def get_text(self, index: int = 0) -> str:
        return self._call("get_text", index)

    def submit(
        self,
        lot: int = 1,
        print_: bool = False,
        synchronous: bool = True,
        compressed: bool = False,
    ) -> str:
        return self._call("submit", lot, print_, synchronous, compressed)

    def query_status(self, chave: str, extract_events: bool = True) -> str:
        return self._call("query_status", chave, extract_events)

    def cancel(self, chave: str, justification: str, cnpj: str, lot: int = 1) -> str:
        return self._call("cancel", chave, justification, cnpj, lot)

    def void_range(
        self,
        cnpj: str,
        justification: str,
        year: int,
        modelo: int,
        serie: int,
        first: int,
        last: int,
    ) -> str:
        return self._call("void_range", cnpj, justification, year, modelo, serie, first, last)

    def render_printable(self) -> str | None:
        return self._call("render_printable")

    def clear(self) -> None:
        self._call("clear")

    def service_status(self) -> str:
        return self._call("service_status")


class ProcessorGuard:
    """Serializes access to one :class:`DocumentProcessor`.

    A lock admits one session at a time and a single worker thread runs the
    processor calls, so a call that overruns its deadline keeps later calls
    queued behind it instead of running alongside.
    """

    def __init__(self, processor: DocumentProcessor, timeout: float = PROCESSOR_TIMEOUT) -> None:
        self.processor = processor
        self.timeout = timeout
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nfe-processor")
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _execute(self, op: str, args: tuple[Any, ...], timeout: float) -> Any:
        if self._closed:
            raise ProcessorUnavailable(f"Processador indisponivel ({op})")
        method: Callable[..., Any] = getattr(self.processor, op)
        future = self._executor.submit(method, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.error("Processor %s exceeded %.1fs", op, timeout)
            raise ProcessorTimeout(f"{op}: tempo limite de {timeout:g}s excedido") from None
        except NFeError:
            raise
        except Exception as exc:
            logger.error("Processor %s failed: %s", op, exc)
            raise ProcessorError(f"{op}: falha no processador: {exc}", diagnostic=str(exc)) from exc

    @contextmanager
    def session(self, timeout: float | None = None) -> Iterator[ProcessorSession]:
        """Hold the processor exclusively; the slot is cleared on entry and exit."""
        if self._closed:
            raise ProcessorUnavailable("Processador indisponivel")
        call_timeout = timeout if timeout is not None else self.timeout
        with self._lock:
            session = ProcessorSession(self, call_timeout)
            try:
                session.clear()
                yield session
            except BaseException:
                try:
                    session.clear()
                except NFeError:
                    logger.warning("Failed to clear processor after error", exc_info=True)
                raise
            else:
                session.clear()
            finally:
                session._open = False

    def run(self, op: str, *args: Any, timeout: float | None = None) -> Any:
        """Run a single operation in its own session."""
        with self.session(timeout) as session:
            return getattr(session, op)(*args)

    def close(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


# --- In-memory processor ---

_KEY_RE = re.compile(r'Id="NFe(\d{44})"')

FAKE_SIGNATURE = '<Signature xmlns="http://www.w3.org/2000/09/xmldsig#"/>'


def _key_of(text: str) -> str | None:
    match = _KEY_RE.search(text)
    return match.group(1) if match else None


class FakeDocumentProcessor:
    """In-memory processor for tests and dry runs.

    Every call is appended to :attr:`calls` as ``(op, detail)``. Replies can
    be queued per operation with :meth:`script`; failures with :meth:`fail`.
    Without a scripted reply each operation answers with a success reply.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, Any]] = []
        self.loaded: list[str] = []
        self._replies: dict[str, deque[str]] = defaultdict(deque)
        self._failures: dict[str, deque[Exception]] = defaultdict(deque)
        self._mutex = threading.Lock()
        self._protocol_seq = 0

    def script(self, op: str, *replies: str) -> None:
        self._replies[op].extend(replies)

    def fail(self, op: str, exc: Exception) -> None:
        self._failures[op].append(exc)

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]

    def _enter(self, op: str, detail: Any = None) -> None:
        with self._mutex:
            self.calls.append((op, detail))
            failure = self._failures[op].popleft() if self._failures[op] else None
        pause = self.delays.get(op, self.delay)
        if pause:
            time.sleep(pause)
        if failure is not None:
            raise failure

    def _reply(self, op: str, default: Callable[[], str]) -> str:
        with self._mutex:
            if self._replies[op]:
                return self._replies[op].popleft()
        return default()

    def load(self, text: str) -> None:
        self._enter("load", _key_of(text))
        self.loaded.append(text)

    def sign(self) -> None:
        self._enter("sign", tuple(_key_of(t) for t in self.loaded))
        self.loaded = [
            t if FAKE_SIGNATURE in t else t.replace("</NFe>", f"{FAKE_SIGNATURE}</NFe>")
            for t in self.loaded
        ]

    def validate(self) -> None:
        self._enter("validate", tuple(_key_of(t) for t in self.loaded))
        if not self.loaded:
            raise RuntimeError("Nenhuma NF-e carregada")
        unsigned = [t for t in self.loaded if FAKE_SIGNATURE not in t]
        if unsigned:
            raise RuntimeError("Falha na validacao: NF-e nao assinada")

    def get_text(self, index: int = 0) -> str:
        self._enter("get_text", index)
        try:
            return self.loaded[index]
        except IndexError:
            raise RuntimeError(f"Indice de NF-e invalido: {index}") from None

    def _authorized_reply(self) -> str:
        lines = ["[Envio]", "CStat=100", "XMotivo=Autorizado o uso da NF-e", "NRec=351000000000001"]
        for text in self.loaded:
            self._protocol_seq += 1
            chave = _key_of(text)
            lines += [
                f"[NFe{chave}]",
                "CStat=100",
                "XMotivo=Autorizado o uso da NF-e",
                f"chDFe={chave}",
                f"NProt={135000000000000 + self._protocol_seq}",
                "DhRecbto=2024-05-10T10:00:00-03:00",
            ]
        return "\n".join(lines)

    def submit(self, lot: int, print_: bool, synchronous: bool, compressed: bool) -> str:
        self._enter("submit", tuple(_key_of(t) for t in self.loaded))
        if not self.loaded:
            raise RuntimeError("Nenhuma NF-e carregada")
        return self._reply("submit", self._authorized_reply)

    def query_status(self, chave: str, extract_events: bool = True) -> str:
        self._enter("query_status", chave)
        return self._reply(
            "query_status",
            lambda: f"[Consulta]\nCStat=100\nXMotivo=Autorizado o uso da NF-e\nChNFe={chave}",
        )

    def cancel(self, chave: str, justification: str, cnpj: str, lot: int) -> str:
        self._enter("cancel", chave)
        return self._reply(
            "cancel",
            lambda: f"[Cancelamento]\nCStat=135\nXMotivo=Evento registrado e vinculado a NF-e\n"
            f"ChNFe={chave}\nNProt=135000000009999",
        )

    def void_range(
        self,
        cnpj: str,
        justification: str,
        year: int,
        modelo: int,
        serie: int,
        first: int,
        last: int,
    ) -> str:
        self._enter("void_range", (serie, first, last))
        return self._reply(
            "void_range",
            lambda: "[Inutilizacao]\nCStat=102\nXMotivo=Inutilizacao de numero homologado",
        )

    def render_printable(self) -> str | None:
        self._enter("render_printable", tuple(_key_of(t) for t in self.loaded))
        if not self.loaded:
            raise RuntimeError("Nenhuma NF-e carregada")
        return f"{_key_of(self.loaded[0])}-nfe.pdf"

    def clear(self) -> None:
        self._enter("clear")
        self.loaded = []

    def service_status(self) -> str:
        self._enter("service_status")
        return self._reply(
            "service_status", lambda: "[Status]\nCStat=107\nXMotivo=Servico em Operacao"
        )
