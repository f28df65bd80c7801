"""Tests for ticks_history parsing."""

from datetime import datetime, timezone

from accumulator_sim.services.market.deriv_history import parse_history_response, ticks_to_candles


class TestTicksToCandles:
    def test_buckets_by_timeframe(self):
        candles = ticks_to_candles("1HZ25V", [125, 60, 61], [2.0, 1.0, 3.0], timeframe_sec=60)
        assert len(candles) == 2
        first, second = candles
        assert first.open_time == datetime.fromtimestamp(60, tz=timezone.utc)
        assert (first.open, first.high, first.low, first.close, first.volume) == (1.0, 3.0, 1.0, 3.0, 2)
        assert (second.open, second.close, second.volume) == (2.0, 2.0, 1)

    def test_mismatched_lengths(self):
        assert ticks_to_candles("1HZ25V", [1, 2], [1.0]) == []

    def test_empty(self):
        assert ticks_to_candles("1HZ25V", [], []) == []


class TestParseHistoryResponse:
    def test_candles_style(self):
        resp = {
            "msg_type": "candles",
            "candles": [
                {"epoch": 120, "open": "1.5", "high": 2, "low": 1, "close": 1.8},
                {"open": 9},  # no epoch, skipped
            ],
        }
        candles = parse_history_response("1HZ50V", resp, granularity=60)
        assert len(candles) == 1
        assert candles[0].symbol == "1HZ50V"
        assert candles[0].open == 1.5
        assert candles[0].timeframe_sec == 60

    def test_ticks_style_is_aggregated(self):
        resp = {"history": {"times": [0, 1, 2, 60], "prices": [10, 11, 9, 12]}}
        candles = parse_history_response("1HZ10V", resp, granularity=60)
        assert [(c.open, c.high, c.low, c.close) for c in candles] == [(10.0, 11.0, 9.0, 9.0), (12.0, 12.0, 12.0, 12.0)]

    def test_ticks_style_truncates_to_shorter_list(self):
        resp = {"history": {"times": [0, 1, 2], "prices": [10, 11]}}
        candles = parse_history_response("1HZ10V", resp, granularity=60)
        assert candles[0].volume == 2

    def test_empty_response(self):
        assert parse_history_response("1HZ10V", {}) == []
