from datetime import timedelta, timezone

import pytest

from burnwatch.billing import (
    align_to_window,
    billing_block_id,
    cache_efficiency,
    current_block_status,
    group_billing_blocks,
    project_token_stats,
    summarize_billing_blocks,
    summarize_window,
)
from burnwatch.block_tracker import SessionBlockTracker
from burnwatch.models import BurnRateLevel
from conftest import T0

HOUR = timedelta(hours=1)


class TestSummarizeWindow:
    def test_totals_only_entries_inside_window(self, make_entry: "object") -> "None":
        start = T0
        end = T0 + 5 * HOUR
        entries = [
            make_entry(T0 - timedelta(minutes=1)),
            make_entry(T0),
            make_entry(T0 + 2 * HOUR, cache_read_tokens=500),
            make_entry(end),
        ]

        block = summarize_window(entries, start, end, now=T0 + HOUR)
        assert block.total_tokens == 2500
        assert block.total_cost == pytest.approx(0.02)
        assert block.entry_ids == (entries[1].entry_id, entries[2].entry_id)
        assert block.block_id == billing_block_id(start)

    def test_elapsed_and_remaining_for_active_window(self, make_entry: "object") -> "None":
        block = summarize_window(
            [make_entry(T0)], T0, T0 + 5 * HOUR, now=T0 + 2 * HOUR
        )
        assert block.is_active is True
        assert block.elapsed_minutes == pytest.approx(120)
        assert block.remaining_minutes == pytest.approx(180)
        assert block.burn_rate.cost_per_hour == pytest.approx(0.005)
        assert block.projected_cost == pytest.approx(0.01 + 0.005 * 3)

    def test_finished_window(self, make_entry: "object") -> "None":
        block = summarize_window(
            [make_entry(T0)], T0, T0 + 5 * HOUR, now=T0 + 9 * HOUR
        )
        assert block.is_active is False
        assert block.elapsed_minutes == pytest.approx(300)
        assert block.remaining_minutes == 0
        assert block.projected_cost == pytest.approx(block.total_cost)

    def test_rejects_empty_window(self) -> "None":
        with pytest.raises(ValueError):
            summarize_window([], T0, T0, now=T0)

    def test_matches_live_tracker_totals(self, make_entry: "object") -> "None":
        entries = [
            make_entry(T0 + timedelta(minutes=m), cost_usd=0.0137 * (m + 1))
            for m in (0, 7, 59, 180, 299)
        ] + [make_entry(T0 + timedelta(minutes=301))]

        tracker = SessionBlockTracker()
        for entry in entries:
            tracker.add(entry)
        live = tracker.closed_blocks()[0]

        historical = summarize_window(entries, live.start_time, live.end_time, now=T0)
        assert historical.tokens == live.tokens
        assert historical.total_cost == pytest.approx(live.cost_usd)
        assert len(historical.entry_ids) == len(live.entries)


class TestAlignToWindow:
    @pytest.mark.parametrize(
        ("hour", "minute", "slot"),
        [(0, 0, 0), (4, 59, 0), (5, 0, 5), (9, 30, 5), (15, 10, 15), (23, 59, 20)],
    )
    def test_five_hour_slots_from_midnight(
        self,
        hour: "int",
        minute: "int",
        slot: "int",
    ) -> "None":
        timestamp = T0.replace(hour=hour, minute=minute)
        assert align_to_window(timestamp) == T0.replace(hour=slot, minute=0)

    def test_other_timezones_align_in_utc(self) -> "None":
        local = T0.astimezone(timezone(timedelta(hours=2)))
        assert align_to_window(local) == T0.replace(hour=5, minute=0)


class TestGroupBillingBlocks:
    def test_windows_start_on_utc_slots(self, make_entry: "object") -> "None":
        windows = group_billing_blocks(
            [make_entry(T0), make_entry(T0.replace(hour=15, minute=10))]
        )
        assert windows == [
            (T0.replace(hour=5, minute=0), T0.replace(hour=10, minute=0)),
            (T0.replace(hour=15, minute=0), T0.replace(hour=20, minute=0)),
        ]

    def test_entry_at_end_starts_next_window(self, make_entry: "object") -> "None":
        start = T0.replace(hour=5, minute=0)
        windows = group_billing_blocks(
            [make_entry(T0), make_entry(start + 5 * HOUR)]
        )
        assert [w[0] for w in windows] == [start, start + 5 * HOUR]

    def test_window_crossing_midnight_is_not_overlapped(self, make_entry: "object") -> "None":
        # 20:30 opens [20:00, 01:00); 01:30 would align back to 00:00
        evening = T0.replace(hour=20, minute=30)
        windows = group_billing_blocks(
            [make_entry(evening), make_entry(evening + 5 * HOUR)]
        )
        first_end = T0.replace(hour=20, minute=0) + 5 * HOUR
        assert windows[0][1] == first_end
        assert windows[1] == (first_end, first_end + 5 * HOUR)

    def test_unsorted_input(self, make_entry: "object") -> "None":
        windows = group_billing_blocks(
            [make_entry(T0 + 12 * HOUR), make_entry(T0)]
        )
        assert len(windows) == 2
        assert windows[0][0] < windows[1][0]

    def test_empty(self) -> "None":
        assert group_billing_blocks([]) == []


class TestSummarizeBillingBlocks:
    def test_current_and_recent_blocks(self, make_entry: "object") -> "None":
        entries = [
            make_entry(T0 + timedelta(hours=6 * i), session_id=f"s{i}", cost_usd=0.1 * (i + 1))
            for i in range(5)
        ]
        now = T0 + timedelta(hours=24, minutes=10)
        summary = summarize_billing_blocks(entries, now)

        assert summary.total_blocks == 5
        assert summary.current_block is not None
        assert summary.current_block.is_active is True
        assert summary.current_block.total_cost == pytest.approx(0.5)
        assert len(summary.recent_blocks) == 4
        starts = [b.start_time for b in summary.recent_blocks]
        assert starts == sorted(starts, reverse=True)
        assert summary.average_block_cost == pytest.approx(1.5 / 5)

    def test_recent_blocks_limited(self, make_entry: "object") -> "None":
        entries = [make_entry(T0 + timedelta(hours=6 * i)) for i in range(15)]
        summary = summarize_billing_blocks(entries, T0 + timedelta(days=30))
        assert summary.current_block is None
        assert len(summary.recent_blocks) == 10
        assert summary.total_blocks == 15

    def test_peak_burn_rate(self, make_entry: "object") -> "None":
        entries = [make_entry(T0), make_entry(T0 + timedelta(hours=6), input_tokens=30_000)]
        summary = summarize_billing_blocks(entries, T0 + timedelta(days=1))
        expected = max(
            b.burn_rate.tokens_per_minute for b in summary.recent_blocks
        )
        assert summary.peak_burn_rate == pytest.approx(expected)
        assert summary.peak_burn_rate > 0

    def test_empty(self) -> "None":
        summary = summarize_billing_blocks([], T0)
        assert summary.current_block is None
        assert summary.recent_blocks == ()
        assert summary.total_blocks == 0
        assert summary.average_block_cost == 0.0
        assert summary.peak_burn_rate == 0.0


class TestCurrentBlockStatus:
    def test_without_block(self) -> "None":
        status = current_block_status(None, T0)
        assert status.is_active is False
        assert status.start_time is None
        assert status.total_tokens == 0
        assert status.burn_rate_status.level == BurnRateLevel.LOW

    def test_with_open_block(self, make_entry: "object") -> "None":
        block = SessionBlockTracker().add(make_entry(T0))
        status = current_block_status(block, T0 + HOUR)

        assert status.is_active is True
        assert status.start_time == T0
        assert status.end_time == T0 + 5 * HOUR
        assert status.remaining_minutes == pytest.approx(240)
        assert status.total_tokens == 1000
        assert status.total_cost == pytest.approx(0.01)

    def test_block_past_end_is_inactive(self, make_entry: "object") -> "None":
        block = SessionBlockTracker().add(make_entry(T0))
        status = current_block_status(block, T0 + 6 * HOUR)
        assert status.is_active is False
        assert status.remaining_minutes == 0


class TestProjectTokenStats:
    def test_breakdown_per_project(self, make_entry: "object") -> "None":
        entries = [
            make_entry(T0, project_path="/w/api", cache_read_tokens=300, cache_creation_tokens=100),
            make_entry(T0, project_path="/w/api"),
            make_entry(T0, project_path="/w/web", input_tokens=1_000_000, output_tokens=0),
        ]
        stats = {s.project_name: s for s in project_token_stats(entries)}

        assert set(stats) == {"api", "web"}
        api = stats["api"]
        assert api.project_id == "/w/api"
        assert api.tokens.input.count == 800
        assert api.tokens.output.count == 1200
        assert api.tokens.cache_read.count == 300
        assert api.tokens.cache_creation.count == 100
        assert api.cache_efficiency == 75
        assert stats["web"].tokens.input.cost == pytest.approx(3.0)
        assert stats["web"].cache_efficiency == 0

    def test_sorted_by_cost(self, make_entry: "object") -> "None":
        entries = [
            make_entry(T0, project_path="/w/small", input_tokens=1),
            make_entry(T0, project_path="/w/big", input_tokens=1_000_000),
        ]
        assert [s.project_name for s in project_token_stats(entries)] == ["big", "small"]

    def test_contribution_to_current_window(self, make_entry: "object") -> "None":
        entries = [
            make_entry(T0, project_path="/w/a", input_tokens=1_000_000, output_tokens=0),
            make_entry(T0, project_path="/w/b", input_tokens=3_000_000, output_tokens=0),
            # outside the window, must not count
            make_entry(T0 - 10 * HOUR, project_path="/w/a", input_tokens=9_000_000),
        ]
        window = (T0, T0 + 5 * HOUR)
        stats = {s.project_name: s for s in project_token_stats(entries, window)}
        assert stats["a"].contribution_to_current_block == 25
        assert stats["b"].contribution_to_current_block == 75

    def test_no_window_means_no_contribution(self, make_entry: "object") -> "None":
        stats = project_token_stats([make_entry(T0)])
        assert stats[0].contribution_to_current_block == 0


class TestCacheEfficiency:
    def test_zero_operations(self) -> "None":
        assert cache_efficiency(0, 0) == 0

    def test_rounded_percentage(self) -> "None":
        assert cache_efficiency(2, 1) == 67
