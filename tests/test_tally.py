from __future__ import annotations

import asyncio

import pytest

from crowdplay.tally import InputTally, TallyAggregator, encode_snapshot, parse_vote


class _Recorder:
    def __init__(self) -> None:
        self.tallies: list[list[int]] = []
        self.commands: list[int] = []

    def aggregator(self, tally: InputTally, **kwargs: float) -> TallyAggregator:
        return TallyAggregator(tally, self.tallies.append, self.commands.append, **kwargs)


class TestInputTally:
    def test_increment_and_snapshot(self) -> None:
        tally = InputTally()
        assert tally.increment(3)
        assert tally.increment(3)
        assert tally.snapshot() == [0, 0, 0, 2, 0, 0, 0, 0]

    @pytest.mark.parametrize("bad", [-1, 8, 99, True, False, 2.0, "3", None])
    def test_invalid_ids_are_noops(self, bad: object) -> None:
        tally = InputTally()
        assert tally.increment(bad) is False
        assert tally.snapshot() == [0] * 8

    def test_snapshot_is_a_copy(self) -> None:
        tally = InputTally(2)
        snap = tally.snapshot()
        snap[0] = 5
        assert tally.snapshot() == [0, 0]

    def test_leader_prefers_lowest_index_on_ties(self) -> None:
        tally = InputTally()
        for vote in (2, 2, 5, 5):
            tally.increment(vote)
        assert tally.leader() == 2

    def test_leader_none_when_empty(self) -> None:
        assert InputTally().leader() is None

    def test_rejects_zero_size(self) -> None:
        with pytest.raises(ValueError):
            InputTally(0)


class TestParseVote:
    @pytest.mark.parametrize(("payload", "expected"), [(b"3", 3), (b" 7\n", 7), ("0", 0)])
    def test_decimal(self, payload: bytes | str, expected: int) -> None:
        assert parse_vote(payload) == expected

    @pytest.mark.parametrize("payload", [b"", b"3abc", b"-1", b"1.5", b"\xff\xfe", b"A"])
    def test_malformed(self, payload: bytes) -> None:
        assert parse_vote(payload) is None


def test_decision_publishes_leader_and_resets() -> None:
    rec = _Recorder()
    tally = InputTally()
    agg = rec.aggregator(tally)
    for vote in (2, 2, 5, 5):
        tally.increment(vote)

    assert agg.decision_tick() == 2
    assert rec.commands == [2]
    assert tally.snapshot() == [0] * 8


def test_decision_with_no_votes_publishes_nothing() -> None:
    rec = _Recorder()
    agg = rec.aggregator(InputTally())
    assert agg.decision_tick() is None
    assert rec.commands == []


def test_telemetry_collapses_repeated_zero_snapshots() -> None:
    rec = _Recorder()
    tally = InputTally(3)
    agg = rec.aggregator(tally)

    agg.telemetry_tick()
    agg.telemetry_tick()
    agg.telemetry_tick()
    assert rec.tallies == [[0, 0, 0]]
    assert agg.suppressing

    tally.increment(1)
    agg.telemetry_tick()
    agg.telemetry_tick()
    assert rec.tallies == [[0, 0, 0], [0, 1, 0], [0, 1, 0]]
    assert not agg.suppressing


def test_decision_clears_suppression_so_reset_is_reported_once() -> None:
    rec = _Recorder()
    tally = InputTally(3)
    agg = rec.aggregator(tally)

    agg.telemetry_tick()
    assert agg.suppressing
    tally.increment(0)
    agg.decision_tick()
    assert not agg.suppressing

    agg.telemetry_tick()
    agg.telemetry_tick()
    assert rec.tallies == [[0, 0, 0], [0, 0, 0]]


def test_publish_failure_does_not_stop_decisions() -> None:
    def boom(_value: object) -> None:
        raise RuntimeError("broker down")

    tally = InputTally()
    agg = TallyAggregator(tally, boom, boom)
    tally.increment(4)
    assert agg.decision_tick() == 4
    assert tally.snapshot() == [0] * 8
    assert agg.telemetry_tick() is True


def test_encode_snapshot_is_compact_json() -> None:
    assert encode_snapshot([0, 1, 2]) == "[0,1,2]"


@pytest.mark.asyncio
async def test_timers_run_after_start_and_stop_cleanly() -> None:
    rec = _Recorder()
    tally = InputTally()
    agg = rec.aggregator(tally, telemetry_interval=0.01, decision_interval=0.01)
    tally.increment(6)

    agg.start()
    assert agg.is_running
    await asyncio.sleep(0.05)
    await agg.stop()

    assert not agg.is_running
    assert rec.commands == [6]
    assert rec.tallies
