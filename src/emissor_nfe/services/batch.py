from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass

from emissor_nfe.models.record import InvoiceRecord, InvoiceStatus
from emissor_nfe.services.exceptions import EmptyBatch, InvalidTransition, ValidationError
from emissor_nfe.services.processor import ProcessorGuard
from emissor_nfe.services.response_parser import GatewayVerdict, interpret
from emissor_nfe.utils.registry import InvoiceRepository

logger = logging.getLogger(__name__)

LOT_SECTION = "Envio"

_PROTOCOL_KEYS = ("NProt", "Protocolo", "nProt")


@dataclass(frozen=True)
class RecordOutcome:
    """The lot verdict as it applies to one record."""

    record_id: str
    chave: str | None
    success: bool
    code: str | None
    reason: str | None
    protocolo: str | None = None
    recebido_em: str | None = None


@dataclass(frozen=True)
class LotResult:
    lot: int
    verdict: GatewayVerdict
    outcomes: tuple[RecordOutcome, ...]

    @property
    def success(self) -> bool:
        return self.verdict.success


def _first(block: dict, keys: Sequence[str]) -> str | None:
    for key in keys:
        value = block.get(key)
        if value:
            return value
    return None


def distribute(verdict: GatewayVerdict, records: Sequence[InvoiceRecord]) -> tuple[RecordOutcome, ...]:
    """Spread one lot verdict over its records.

    Protocol and receipt time come from the record's ``NFe<chave>`` section
    when the reply has one, else from the lot section.
    """
    lot_block = verdict.section(LOT_SECTION)
    outcomes = []
    for record in records:
        own = verdict.section(f"NFe{record.chave}") if record.chave else {}
        outcomes.append(
            RecordOutcome(
                record_id=record.id,
                chave=record.chave,
                success=verdict.success,
                code=verdict.code,
                reason=verdict.reason,
                protocolo=_first(own, _PROTOCOL_KEYS) or _first(lot_block, _PROTOCOL_KEYS),
                recebido_em=_first(own, ("DhRecbto",)) or _first(lot_block, ("DhRecbto",)),
            )
        )
    return tuple(outcomes)


class InFlight:
    """Record ids currently on their way to the authority.

    A claim belongs to the thread that took it, so the same thread may claim
    an id again (lifecycle wrapping the coordinator) while any other thread
    is refused.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._owners: dict[str, int] = {}

    def __contains__(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._owners

    @contextmanager
    def claim(self, record_ids: Sequence[str]) -> Iterator[None]:
        me = threading.get_ident()
        with self._lock:
            busy = [rid for rid in record_ids if self._owners.get(rid, me) != me]
            if busy:
                raise InvalidTransition(f"NF-e {busy[0]} ja esta em envio ao fisco")
            taken = [rid for rid in dict.fromkeys(record_ids) if rid not in self._owners]
            for rid in taken:
                self._owners[rid] = me
        try:
            yield
        finally:
            with self._lock:
                for rid in taken:
                    del self._owners[rid]


class BatchCoordinator:
    """Submits validated records to the authority as one lot."""

    def __init__(self, repository: InvoiceRepository, guard: ProcessorGuard) -> None:
        self.repository = repository
        self.guard = guard
        self.in_flight = InFlight()

    def claim(self, record_ids: Sequence[str]) -> AbstractContextManager[None]:
        """Hold *record_ids* against any other sender until the block exits."""
        return self.in_flight.claim(record_ids)

    def _load_records(self, record_ids: Sequence[str]) -> list[InvoiceRecord]:
        records = []
        for record_id in record_ids:
            record = self.repository.get(record_id)
            if record is None:
                raise ValidationError(f"NF-e nao encontrada: {record_id}")
            if record.status is not InvoiceStatus.VALIDATED:
                raise InvalidTransition(
                    f"NF-e {record_id} precisa estar validada para envio (status: {record.status})",
                    status=record.status,
                )
            if not record.xml_assinado:
                raise InvalidTransition(
                    f"NF-e {record_id} nao possui XML assinado", status=record.status
                )
            records.append(record)
        return records

    def submit_lot(
        self,
        record_ids: Sequence[str],
        lot: int = 1,
        *,
        synchronous: bool = True,
        compressed: bool = False,
        print_: bool = False,
    ) -> LotResult:
        """Load every signed document, submit them in one call and interpret the reply.

        Never retried. Processor failures propagate with no record touched.
        The records are claimed and their status read under the claim, so a
        document already on its way is never sent twice.
        """
        if not record_ids:
            raise EmptyBatch("Lote vazio: informe ao menos uma NF-e")
        with self.claim(record_ids):
            records = self._load_records(record_ids)

            logger.info("Submitting lot %d with %d document(s)", lot, len(records))
            with self.guard.session() as session:
                for record in records:
                    session.load(record.xml_assinado or "")
                reply = session.submit(lot, print_, synchronous, compressed)

        verdict = interpret(reply, sections=(LOT_SECTION,))
        logger.info("Lot %d answered cStat=%s (%s)", lot, verdict.code, verdict.reason)
        return LotResult(lot=lot, verdict=verdict, outcomes=distribute(verdict, records))
