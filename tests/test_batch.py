from __future__ import annotations

import threading

import pytest

from emissor_nfe.models.record import InvoiceStatus
from emissor_nfe.services.batch import BatchCoordinator, InFlight, distribute
from emissor_nfe.services.exceptions import (
    EmptyBatch,
    InvalidTransition,
    ProcessorTimeout,
    ValidationError,
)
from emissor_nfe.services.response_parser import interpret


@pytest.fixture
def coordinator(repository, guard) -> BatchCoordinator:
    return BatchCoordinator(repository, guard)


@pytest.fixture
def validated(manager, make_request):
    def _make(numero: int):
        record = manager.create(make_request(numero=numero))
        return manager.prepare(record)

    return _make


def test_empty_lot_raises(coordinator, processor):
    with pytest.raises(EmptyBatch):
        coordinator.submit_lot([])
    assert processor.calls == []


def test_unknown_record_raises(coordinator, processor):
    with pytest.raises(ValidationError):
        coordinator.submit_lot(["nao-existe"])
    assert processor.calls == []


def test_draft_record_is_refused_before_processor(coordinator, manager, request_dict, processor):
    record = manager.create(request_dict)
    with pytest.raises(InvalidTransition):
        coordinator.submit_lot([record.id])
    assert processor.calls == []


def test_signed_but_not_validated_is_refused(coordinator, manager, request_dict, processor):
    record = manager.sign(manager.create(request_dict))
    processor.calls.clear()
    with pytest.raises(InvalidTransition):
        coordinator.submit_lot([record.id])
    assert processor.calls == []


def test_lot_loads_every_document_in_one_session(coordinator, validated, processor):
    first, second = validated(1), validated(2)
    processor.calls.clear()

    result = coordinator.submit_lot([first.id, second.id], lot=7)

    assert processor.ops() == ["clear", "load", "load", "submit", "clear"]
    assert processor.calls[3] == ("submit", (first.chave, second.chave))
    assert result.lot == 7
    assert result.success
    assert [o.record_id for o in result.outcomes] == [first.id, second.id]
    # Protocols come from each document's own section
    assert result.outcomes[0].protocolo != result.outcomes[1].protocolo
    assert result.outcomes[0].recebido_em == "2024-05-10T10:00:00-03:00"


def test_rejection_is_returned_not_raised(coordinator, validated, processor, repository):
    record = validated(1)
    processor.script("submit", "[Envio]\nCStat=225\nXMotivo=Rejeicao: Falha no Schema XML")
    result = coordinator.submit_lot([record.id])
    assert not result.success
    assert result.outcomes[0].code == "225"
    assert result.outcomes[0].reason == "Rejeicao: Falha no Schema XML"
    # Coordinator never writes records
    assert repository.get(record.id).status is InvoiceStatus.VALIDATED


def test_processor_failure_propagates(coordinator, validated, processor, repository):
    record = validated(1)
    processor.fail("submit", ProcessorTimeout("submit: tempo limite"))
    with pytest.raises(ProcessorTimeout):
        coordinator.submit_lot([record.id])
    assert repository.get(record.id).status is InvoiceStatus.VALIDATED
    assert processor.ops().count("submit") == 1


def test_distribute_falls_back_to_lot_section(validated):
    record = validated(1)
    verdict = interpret("[Envio]\nCStat=100\nXMotivo=Autorizado\nNProt=111\nDhRecbto=10/05/2024 10:00:00")
    (outcome,) = distribute(verdict, [record])
    assert outcome.protocolo == "111"
    assert outcome.recebido_em == "10/05/2024 10:00:00"
    assert outcome.chave == record.chave


class TestInFlight:
    def test_other_thread_is_refused_while_claimed(self):
        in_flight = InFlight()
        errors = []

        def other():
            try:
                with in_flight.claim(["a"]):
                    pass
            except InvalidTransition as exc:
                errors.append(exc)

        with in_flight.claim(["a", "b"]):
            thread = threading.Thread(target=other)
            thread.start()
            thread.join()
            assert "a" in in_flight
        assert len(errors) == 1
        assert "a" not in in_flight and "b" not in in_flight

    def test_same_thread_may_claim_again(self):
        in_flight = InFlight()
        with in_flight.claim(["a"]):
            with in_flight.claim(["a"]):
                pass
            assert "a" in in_flight
        assert "a" not in in_flight

    def test_claimed_record_is_not_submitted(self, coordinator, validated, processor):
        record = validated(1)
        processor.calls.clear()
        worker_errors = []

        def other():
            try:
                coordinator.submit_lot([record.id])
            except InvalidTransition as exc:
                worker_errors.append(exc)

        with coordinator.claim([record.id]):
            thread = threading.Thread(target=other)
            thread.start()
            thread.join()
        assert len(worker_errors) == 1
        assert processor.calls == []
