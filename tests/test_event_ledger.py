"""Tests for the webhook event ledger."""

from subsync.domain.models import RecordOutcome
from subsync.services.event_ledger import EventLedger


def test_first_delivery_is_fresh_then_retry_until_processed(persistence, clock):
    ledger = EventLedger(persistence, clock=clock)

    assert ledger.record_if_new("evt_1", "invoice.paid", "{}") is RecordOutcome.FRESH
    assert ledger.record_if_new("evt_1", "invoice.paid", "{}") is RecordOutcome.RETRY

    with persistence.transaction() as tx:
        tx.mark_event_processed("evt_1", clock())

    assert ledger.record_if_new("evt_1", "invoice.paid", "{}") is RecordOutcome.ALREADY_SEEN


def test_recorded_event_keeps_first_payload(persistence, clock):
    ledger = EventLedger(persistence, clock=clock)
    ledger.record_if_new("evt_1", "invoice.paid", '{"first": true}')
    ledger.record_if_new("evt_1", "invoice.paid", '{"second": true}')

    event = ledger.get("evt_1")
    assert event.raw_payload == '{"first": true}'
    assert event.received_at == clock()
    assert event.processed_at is None


def test_list_unprocessed_skips_processed_events(persistence, clock):
    ledger = EventLedger(persistence, clock=clock)
    ledger.record_if_new("evt_done", "invoice.paid", "{}")
    ledger.record_if_new("evt_pending", "invoice.paid", "{}")
    with persistence.transaction() as tx:
        tx.mark_event_processed("evt_done", clock())

    assert [event.event_id for event in ledger.list_unprocessed()] == ["evt_pending"]


def test_processed_at_is_never_rewritten(persistence, clock):
    ledger = EventLedger(persistence, clock=clock)
    ledger.record_if_new("evt_1", "invoice.paid", "{}")
    first = clock()
    with persistence.transaction() as tx:
        tx.mark_event_processed("evt_1", first)
    clock.advance(hours=1)
    with persistence.transaction() as tx:
        tx.mark_event_processed("evt_1", clock())

    assert ledger.get("evt_1").processed_at == first


def test_list_unprocessed_older_than(persistence, clock):
    ledger = EventLedger(persistence, clock=clock)
    ledger.record_if_new("evt_old", "invoice.paid", "{}")
    cutoff = clock()
    clock.advance(minutes=10)
    ledger.record_if_new("evt_new", "invoice.paid", "{}")

    assert [event.event_id for event in ledger.list_unprocessed(older_than=cutoff)] == ["evt_old"]
    assert len(ledger.list_unprocessed()) == 2
