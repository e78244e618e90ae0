import asyncio
import re
from datetime import datetime, time

from museum_booking.manual import ManualFallbackStrategy
from museum_booking.models import MANUAL, MANUAL_PENDING, BookingAttemptResult
from museum_booking.orchestrator import TIMING_GATE, EscalationOrchestrator
from museum_booking.strategies import BookingStrategy
from museum_booking.timing import TimingGate

from conftest import make_request


class RecordingStrategy(BookingStrategy):
    def __init__(self, name, calls, *, succeed=False, raises=None, delay=0.0):
        self.name = name
        self.calls = calls
        self.succeed = succeed
        self.raises = raises
        self.delay = delay

    async def attempt(self, request):
        self.calls.append(self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.succeed:
            return BookingAttemptResult(success=True, provenance=self.name, booking_reference=f"{self.name}-REF")
        return BookingAttemptResult.failed(self.name, f"{self.name} down")


class BrokenStore:
    async def save_manual_booking(self, record):
        raise OSError("disk full")


def _orchestrator(strategies, db, **kwargs):
    return EscalationOrchestrator(strategies, ManualFallbackStrategy(db), **kwargs)


def test_first_success_short_circuits(db):
    calls = []
    strategies = [
        RecordingStrategy("direct_api", calls, succeed=True),
        RecordingStrategy("enhanced_api", calls),
        RecordingStrategy("browser", calls),
    ]
    result = asyncio.run(_orchestrator(strategies, db).run(make_request()))

    assert result.success
    assert result.provenance == "direct_api"
    assert calls == ["direct_api"]
    assert result.failures == ()
    assert asyncio.run(db.list_manual_bookings()) == []


def test_escalates_in_order_and_keeps_trail(db):
    calls = []
    strategies = [
        RecordingStrategy("direct_api", calls),
        RecordingStrategy("enhanced_api", calls),
        RecordingStrategy("browser", calls, succeed=True),
    ]
    result = asyncio.run(_orchestrator(strategies, db).run(make_request()))

    assert result.provenance == "browser"
    assert calls == ["direct_api", "enhanced_api", "browser"]
    assert result.failures == (("direct_api", "direct_api down"), ("enhanced_api", "enhanced_api down"))


def test_manual_fallback_always_succeeds(db):
    calls = []
    strategies = [RecordingStrategy(name, calls) for name in ("direct_api", "enhanced_api", "browser")]
    result = asyncio.run(_orchestrator(strategies, db).run(make_request()))

    assert result.success
    assert result.provenance == MANUAL
    assert result.is_manual
    assert re.fullmatch(r"MANUAL-SM\d{6}-[A-Z0-9]{6}", result.booking_reference)
    assert result.instructions
    assert result.deadline is not None
    assert [name for name, _ in result.failures] == ["direct_api", "enhanced_api", "browser"]

    records = asyncio.run(db.list_manual_bookings(MANUAL_PENDING))
    assert [r.id for r in records] == [result.manual_record_id]
    assert records[0].instructions == result.instructions


def test_strategy_exceptions_are_contained(db):
    calls = []
    strategies = [
        RecordingStrategy("direct_api", calls, raises=RuntimeError("bug")),
        RecordingStrategy("enhanced_api", calls, succeed=True),
    ]
    result = asyncio.run(_orchestrator(strategies, db).run(make_request()))

    assert result.provenance == "enhanced_api"
    assert result.failures == (("direct_api", "RuntimeError: bug"),)


def test_slow_tier_is_cut_off(db):
    calls = []
    strategies = [
        RecordingStrategy("direct_api", calls, succeed=True, delay=5),
        RecordingStrategy("enhanced_api", calls, succeed=True),
    ]
    result = asyncio.run(_orchestrator(strategies, db, tier_timeout=0.05).run(make_request()))

    assert result.provenance == "enhanced_api"
    assert result.failures[0][0] == "direct_api"


def test_closed_window_goes_straight_to_manual_when_enforced(db):
    calls = []
    strategies = [RecordingStrategy("direct_api", calls, succeed=True)]
    orchestrator = _orchestrator(
        strategies,
        db,
        timing_gate=TimingGate(time(17, 0)),
        enforce_release_window=True,
    )

    closed = asyncio.run(orchestrator.run(make_request(), now=datetime(2025, 3, 1, 16, 0)))
    assert closed.provenance == MANUAL
    assert calls == []
    assert closed.failures[0][0] == TIMING_GATE

    opened = asyncio.run(orchestrator.run(make_request(), now=datetime(2025, 3, 1, 17, 1)))
    assert opened.provenance == "direct_api"
    assert calls == ["direct_api"]


def test_window_is_advisory_by_default(db):
    calls = []
    orchestrator = _orchestrator(
        [RecordingStrategy("direct_api", calls, succeed=True)],
        db,
        timing_gate=TimingGate(time(17, 0)),
    )
    result = asyncio.run(orchestrator.run(make_request(), now=datetime(2025, 3, 1, 9, 0)))
    assert result.provenance == "direct_api"


def test_manual_persistence_failure_keeps_success():
    orchestrator = EscalationOrchestrator([], ManualFallbackStrategy(BrokenStore()))
    result = asyncio.run(orchestrator.run(make_request()))

    assert result.success
    assert result.provenance == MANUAL
    assert result.manual_record_id is None
    assert result.booking_reference.startswith("MANUAL-SM")


def test_independent_runs_are_not_deduplicated(db):
    calls = []
    orchestrator = _orchestrator([RecordingStrategy("direct_api", calls, succeed=True)], db)

    async def both():
        return await asyncio.gather(orchestrator.run(make_request()), orchestrator.run(make_request()))

    first, second = asyncio.run(both())
    assert first.success and second.success
    assert calls == ["direct_api", "direct_api"]
