import pytest

from datarelay.models import InvalidTransition, TransactionPhase, TransactionRecord, validate_transition


def test_happy_path_transitions_are_allowed():
    path = [
        TransactionPhase.INITIATED,
        TransactionPhase.AWAITING_PAYMENT,
        TransactionPhase.PAYMENT_VERIFIED,
        TransactionPhase.FULFILLING,
        TransactionPhase.FULFILLED,
    ]
    for current, new in zip(path, path[1:]):
        validate_transition(current, new)


def test_fulfilled_never_goes_back_to_fulfilling():
    with pytest.raises(InvalidTransition):
        validate_transition(TransactionPhase.FULFILLED, TransactionPhase.FULFILLING)
    with pytest.raises(InvalidTransition):
        validate_transition(TransactionPhase.FULFILLED, TransactionPhase.FULFILLING, operator=True)


def test_fulfillment_failed_reopens_only_for_operator():
    with pytest.raises(InvalidTransition):
        validate_transition(TransactionPhase.FULFILLMENT_FAILED, TransactionPhase.FULFILLING)
    validate_transition(TransactionPhase.FULFILLMENT_FAILED, TransactionPhase.FULFILLING, operator=True)


def test_payment_cannot_be_skipped():
    with pytest.raises(InvalidTransition):
        validate_transition(TransactionPhase.AWAITING_PAYMENT, TransactionPhase.FULFILLING)


def test_advance_to_same_phase_is_a_noop(intent):
    record = TransactionRecord(reference="MTN_DATA_abc123", request_payload=intent)
    record.advance(TransactionPhase.INITIATED)
    record.advance(TransactionPhase.AWAITING_PAYMENT)
    assert record.phase == TransactionPhase.AWAITING_PAYMENT
    assert not record.is_terminal
    assert record.fulfillment_transaction_id is None


def test_fulfilled_and_payment_failed_are_terminal(intent):
    record = TransactionRecord(reference="MTN_DATA_abc123", request_payload=intent)
    for phase in TransactionPhase:
        record.phase = phase
        assert record.is_terminal is (phase in (TransactionPhase.FULFILLED, TransactionPhase.PAYMENT_FAILED))
