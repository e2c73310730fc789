from __future__ import annotations

from threading import Event

from pagegate.services.fetch_gate import Debouncer, RequestSequencer


def test_sequencer_only_latest_ticket_wins() -> None:
    sequencer = RequestSequencer()
    first = sequencer.issue()
    second = sequencer.issue()
    assert second > first
    assert sequencer.is_latest(second)
    assert not sequencer.is_latest(first)
    assert sequencer.latest == second


def test_debouncer_last_call_wins() -> None:
    calls: list[str] = []
    done = Event()

    def _record(term: str) -> None:
        calls.append(term)
        done.set()

    debouncer = Debouncer(0.05)
    for term in ["i", "in", "inv"]:
        debouncer.call(_record, term)
    debouncer.flush(timeout=2)

    assert done.wait(timeout=2)
    assert calls == ["inv"]


def test_debouncer_cancel() -> None:
    calls: list[int] = []
    debouncer = Debouncer(0.05)
    debouncer.call(calls.append, 1)
    debouncer.cancel()
    debouncer.flush(timeout=0.2)
    assert calls == []
