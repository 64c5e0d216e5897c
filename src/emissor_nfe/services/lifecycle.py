"""Authorization lifecycle of an NF-e record.

    rascunho --sign/validate--> validada --submit--> autorizada --cancel--> cancelada
                                    |
                                    +--> rejeitada / denegada

Every step that touches the processor runs inside one guarded session and
the record is only written after the processor has answered.
"""

from __future__ import annotations

import copy
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any

from emissor_nfe.config import BRT, QUERY_TIMEOUT
from emissor_nfe.models.party import TechnicalContact
from emissor_nfe.models.record import InvoiceRecord, InvoiceStatus, can_transition
from emissor_nfe.models.request import InvoiceRequest
from emissor_nfe.services.batch import BatchCoordinator, RecordOutcome, distribute
from emissor_nfe.services.exceptions import (
    InvalidTransition,
    ProcessorUnavailable,
    RejectedByAuthority,
    ValidationError,
)
from emissor_nfe.services.nfe_builder import build_nfe, check_structure
from emissor_nfe.services.processor import ProcessorGuard
from emissor_nfe.services.response_parser import (
    CANCEL_SUCCESS_CODES,
    DENIAL_CODES,
    PENDING_CODES,
    SERVICE_OK_CODES,
    SUCCESS_CODES,
    VOID_SUCCESS_CODES,
    GatewayVerdict,
    interpret,
)
from emissor_nfe.services.retry import QUERY, RetryPolicy, retry_call
from emissor_nfe.utils.registry import InvoiceRepository
from emissor_nfe.utils.validators import (
    validate_access_key,
    validate_cnpj,
    validate_justification,
    validate_request,
)

logger = logging.getLogger(__name__)

# Consulta codes that settle a record: authorized (100, 150) or cancelled (101, 135).
_QUERY_AUTHORIZED = frozenset({"100", "150"})
_QUERY_CANCELLED = frozenset({"101", "135"})

_RECEIPT_FORMATS = ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M")


def _parse_receipt(value: str | None) -> datetime:
    """Parse DhRecbto as sent by the processor; unparseable values fall back to now."""
    if value:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            dt = None
            for fmt in _RECEIPT_FORMATS:
                try:
                    dt = datetime.strptime(value, fmt)
                    break
                except ValueError:
                    continue
        if dt is not None:
            return dt if dt.tzinfo else dt.replace(tzinfo=BRT)
        logger.warning("Unrecognized DhRecbto %r, using current time", value)
    return datetime.now(BRT)


class LifecycleManager:
    def __init__(
        self,
        repository: InvoiceRepository,
        guard: ProcessorGuard | None = None,
        coordinator: BatchCoordinator | None = None,
        numbering: Callable[[int], int] | None = None,
        *,
        resp_tec: TechnicalContact | None = None,
        query_policy: RetryPolicy = QUERY,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.repository = repository
        self.guard = guard
        if coordinator is None and guard is not None:
            coordinator = BatchCoordinator(repository, guard)
        self.coordinator = coordinator
        self.numbering = numbering
        self.resp_tec = resp_tec
        self.query_policy = query_policy
        self._sleep = sleep_func

    # --- helpers ---

    @property
    def processor(self) -> ProcessorGuard:
        if self.guard is None:
            raise ProcessorUnavailable("Nenhum processador de documentos configurado")
        return self.guard

    def _current(self, record: InvoiceRecord | str) -> InvoiceRecord:
        record_id = record if isinstance(record, str) else record.id
        found = self.repository.get(record_id)
        if found is None:
            raise ValidationError(f"NF-e nao encontrada: {record_id}")
        return found

    @staticmethod
    def _require(record: InvoiceRecord, target: InvoiceStatus, action: str) -> None:
        if not can_transition(record.status, target):
            raise InvalidTransition(
                f"Nao e possivel {action} NF-e com status '{record.status}'", status=record.status
            )

    def _transition(
        self, record: InvoiceRecord, target: InvoiceStatus, **changes: Any
    ) -> InvoiceRecord:
        self._require(record, target, f"mover para '{target}'")
        updated = self.repository.update(record.evolve(status=target, **changes))
        logger.info("NF-e %s: %s -> %s", record.id, record.status, target)
        return updated

    def _claim(self, record_ids: Sequence[str]) -> AbstractContextManager[None]:
        if self.coordinator is None:
            raise ProcessorUnavailable("Nenhum processador de documentos configurado")
        return self.coordinator.claim(record_ids)

    def _query(self, op: str, *args: Any) -> str:
        return retry_call(
            lambda: self.processor.run(op, *args, timeout=QUERY_TIMEOUT),
            self.query_policy,
            label=op,
            sleep_func=self._sleep,
        )

    # --- creation ---

    def create(self, request: InvoiceRequest | dict) -> InvoiceRecord:
        """Validate and assemble *request*, then persist it as a draft."""
        if isinstance(request, dict):
            snapshot = copy.deepcopy(request)
            request = InvoiceRequest.from_dict(request)
        else:
            snapshot = asdict(request)
        validate_request(request)
        # Before numbering: a reserved nNF is never returned to the series
        check_structure(request)

        if request.numero is None:
            if self.numbering is None:
                raise ValidationError("numero ausente e nenhuma numeracao configurada")
            request = replace(request, numero=self.numbering(request.serie))
            snapshot["numero"] = request.numero

        assembled = build_nfe(request, resp_tec=self.resp_tec)
        totals = assembled.totals
        record = InvoiceRecord(
            id=uuid.uuid4().hex,
            chave=assembled.chave,
            serie=request.serie,
            numero=request.numero,
            natureza_operacao=request.natureza_operacao,
            tp_nf=request.tp_nf,
            fin_nfe=request.fin_nfe,
            tp_amb=request.tp_amb,
            emitente_cnpj=request.emitente.cnpj,
            emitente_nome=request.emitente.razao_social,
            emitente_uf=request.emitente.endereco.uf,
            destinatario_doc=request.destinatario.documento,
            destinatario_nome=request.destinatario.nome,
            valor_produtos=totals.v_prod,
            valor_total=totals.v_nf,
            valor_icms=totals.v_icms,
            valor_pis=totals.v_pis,
            valor_cofins=totals.v_cofins,
            xml=assembled.xml,
            request=snapshot,
            inf_cpl=request.inf_cpl,
        )
        self.repository.create(record)
        logger.info("NF-e %s created (serie %d, nNF %d)", record.id, record.serie, record.numero)
        return record

    # --- signing and validation ---

    def sign(self, record: InvoiceRecord | str) -> InvoiceRecord:
        """Sign the draft document and store the signed text. Status stays draft."""
        record = self._current(record)
        if record.status is not InvoiceStatus.DRAFT:
            raise InvalidTransition(
                f"Somente rascunhos podem ser assinados (status: {record.status})",
                status=record.status,
            )
        if not record.xml:
            raise InvalidTransition(f"NF-e {record.id} nao possui XML montado", status=record.status)

        with self.processor.session() as session:
            session.load(record.xml)
            session.sign()
            signed = session.get_text(0)

        logger.info("NF-e %s signed", record.id)
        return self.repository.update(record.evolve(xml_assinado=signed))

    def validate(self, record: InvoiceRecord | str) -> InvoiceRecord:
        """Validate the signed document; success moves the record to validada."""
        record = self._current(record)
        self._require(record, InvoiceStatus.VALIDATED, "validar")
        if not record.xml_assinado:
            raise InvalidTransition(
                f"NF-e {record.id} precisa ser assinada antes da validacao", status=record.status
            )

        with self.processor.session() as session:
            session.load(record.xml_assinado)
            session.validate()

        return self._transition(record, InvoiceStatus.VALIDATED)

    def prepare(self, record: InvoiceRecord | str) -> InvoiceRecord:
        return self.validate(self.sign(record))

    # --- submission ---

    def _apply_outcome(self, record: InvoiceRecord, outcome: RecordOutcome) -> InvoiceRecord:
        changes: dict[str, Any] = {"codigo_status": outcome.code, "mensagem": outcome.reason}
        if outcome.success:
            return self._transition(
                record,
                InvoiceStatus.AUTHORIZED,
                protocolo=outcome.protocolo,
                autorizada_em=_parse_receipt(outcome.recebido_em),
                **changes,
            )
        if outcome.code in DENIAL_CODES:
            return self._transition(record, InvoiceStatus.DENIED, **changes)
        if outcome.code in PENDING_CODES:
            logger.info("NF-e %s pending at the authority (cStat %s)", record.id, outcome.code)
            return self.repository.update(record.evolve(**changes))
        return self._transition(record, InvoiceStatus.REJECTED, **changes)

    def _settle(self, verdict: GatewayVerdict, records: Sequence[InvoiceRecord]) -> list[InvoiceRecord]:
        updated = [
            self._apply_outcome(record, outcome)
            for record, outcome in zip(records, distribute(verdict, records), strict=True)
        ]
        settled_ok = verdict.success or verdict.code in DENIAL_CODES or verdict.code in PENDING_CODES
        if not settled_ok:
            raise RejectedByAuthority(verdict.code, verdict.reason, verdict.data)
        return updated

    def submit_lot(
        self,
        record_ids: Sequence[str],
        lot: int = 1,
        *,
        synchronous: bool = True,
        compressed: bool = False,
        print_: bool = False,
    ) -> list[InvoiceRecord]:
        """Submit validated records as one lot and apply the verdict to each.

        Rejections are persisted first, then raised as RejectedByAuthority.
        """
        if self.coordinator is None:
            raise ProcessorUnavailable("Nenhum processador de documentos configurado")
        with self.coordinator.claim(record_ids):
            result = self.coordinator.submit_lot(
                record_ids, lot, synchronous=synchronous, compressed=compressed, print_=print_
            )
            records = [self._current(outcome.record_id) for outcome in result.outcomes]
            return self._settle(result.verdict, records)

    def submit(
        self,
        record: InvoiceRecord | str,
        lot: int = 1,
        *,
        synchronous: bool = True,
        compressed: bool = False,
        print_: bool = False,
    ) -> InvoiceRecord:
        record_id = record if isinstance(record, str) else record.id
        return self.submit_lot(
            [record_id], lot, synchronous=synchronous, compressed=compressed, print_=print_
        )[0]

    def emit(
        self,
        request: InvoiceRequest | dict | InvoiceRecord,
        lot: int = 1,
        *,
        synchronous: bool = True,
        compressed: bool = False,
        print_: bool = False,
    ) -> InvoiceRecord:
        """Create (when needed), sign, validate and submit in one processor session."""
        guard = self.processor
        if isinstance(request, InvoiceRecord):
            record_id = request.id
        else:
            record_id = self.create(request).id

        with self._claim([record_id]):
            record = self._current(record_id)
            self._require(record, InvoiceStatus.VALIDATED, "emitir")
            if not record.xml:
                raise InvalidTransition(
                    f"NF-e {record.id} nao possui XML montado", status=record.status
                )

            with guard.session() as session:
                session.load(record.xml_assinado or record.xml)
                if not record.xml_assinado:
                    session.sign()
                signed = session.get_text(0)
                session.validate()
                reply = session.submit(lot, print_, synchronous, compressed)

            record = self.repository.update(record.evolve(xml_assinado=signed))
            record = self._transition(record, InvoiceStatus.VALIDATED)
            verdict = interpret(reply, sections=("Envio",), success_codes=SUCCESS_CODES)
            logger.info("NF-e %s emitted: cStat=%s (%s)", record.id, verdict.code, verdict.reason)
            return self._settle(verdict, [record])[0]

    # --- after authorization ---

    def cancel(
        self,
        record: InvoiceRecord | str,
        justification: str,
        cnpj: str,
        lot: int = 1,
    ) -> InvoiceRecord:
        """Cancel an authorized NF-e. A refused cancel leaves the record as it was."""
        record = self._current(record)
        self._require(record, InvoiceStatus.CANCELLED, "cancelar")
        justification = validate_justification(justification)
        validate_cnpj(cnpj)

        with self._claim([record.id]):
            record = self._current(record)
            self._require(record, InvoiceStatus.CANCELLED, "cancelar")
            reply = self.processor.run("cancel", record.chave, justification, cnpj, lot)
            verdict = interpret(
                reply, sections=("Cancelamento",), success_codes=CANCEL_SUCCESS_CODES
            )
            if not verdict.success:
                raise RejectedByAuthority(verdict.code, verdict.reason, verdict.data)
            return self._transition(
                record,
                InvoiceStatus.CANCELLED,
                codigo_status=verdict.code,
                mensagem=verdict.reason,
            )

    def query(self, chave: str, extract_events: bool = True) -> GatewayVerdict:
        chave = validate_access_key(chave)
        reply = self._query("query_status", chave, extract_events)
        return interpret(reply, sections=("Consulta",), success_codes=SUCCESS_CODES)

    def refresh(self, record: InvoiceRecord | str) -> InvoiceRecord:
        """Bring the record in line with the authority's view of its key."""
        record = self._current(record)
        if not record.chave:
            raise ValidationError(f"NF-e {record.id} nao possui chave de acesso")
        verdict = self.query(record.chave)
        code = verdict.code
        changes: dict[str, Any] = {"codigo_status": code, "mensagem": verdict.reason}

        if code in _QUERY_AUTHORIZED and record.status is InvoiceStatus.VALIDATED:
            return self._transition(
                record,
                InvoiceStatus.AUTHORIZED,
                protocolo=verdict.get("NProt") or record.protocolo,
                autorizada_em=_parse_receipt(verdict.get("DhRecbto")),
                **changes,
            )
        if code in _QUERY_CANCELLED and record.status is InvoiceStatus.AUTHORIZED:
            return self._transition(record, InvoiceStatus.CANCELLED, **changes)
        if code in DENIAL_CODES and can_transition(record.status, InvoiceStatus.DENIED):
            return self._transition(record, InvoiceStatus.DENIED, **changes)
        return record

    def void_range(
        self,
        cnpj: str,
        justification: str,
        year: int,
        modelo: int,
        serie: int,
        first: int,
        last: int,
    ) -> GatewayVerdict:
        """Inutilizacao: declare a range of unused numbers void."""
        validate_cnpj(cnpj)
        justification = validate_justification(justification)
        if not 0 <= serie <= 999:
            raise ValidationError(f"serie: fora da faixa 0-999 ({serie})")
        if not 1 <= first <= last <= 999_999_999:
            raise ValidationError(f"Faixa de numeracao invalida: {first}-{last}")

        reply = self.processor.run(
            "void_range", cnpj, justification, year, modelo, serie, first, last
        )
        verdict = interpret(reply, sections=("Inutilizacao",), success_codes=VOID_SUCCESS_CODES)
        if not verdict.success:
            raise RejectedByAuthority(verdict.code, verdict.reason, verdict.data)
        logger.info("Voided serie %d numbers %d-%d", serie, first, last)
        return verdict

    def service_status(self) -> GatewayVerdict:
        reply = self._query("service_status")
        return interpret(reply, sections=("Status",), success_codes=SERVICE_OK_CODES)

    def render_printable(self, record: InvoiceRecord | str) -> str | None:
        """Render the DANFE for a signed record; returns what the processor reports."""
        record = self._current(record)
        if not record.xml_assinado:
            raise InvalidTransition(
                f"NF-e {record.id} precisa estar assinada para gerar o DANFE", status=record.status
            )
        with self.processor.session() as session:
            session.load(record.xml_assinado)
            return session.render_printable()
