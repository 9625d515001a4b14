"""Tests for the per-tier configuration table and sync windows."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from stream_sync.config.settings import get_settings
from stream_sync.config.tiers import ChannelScope, SyncTier, build_tier_configs

NOW = datetime(2026, 3, 14, 12, 34, 56, 789, tzinfo=UTC)


class TestBuildTierConfigs:
    def test_every_tier_is_configured(self) -> None:
        configs = build_tier_configs(get_settings())
        assert set(configs) == set(SyncTier)

    def test_event_types_and_scopes(self) -> None:
        configs = build_tier_configs(get_settings())

        assert configs[SyncTier.ACTIVE].event_types == ("live",)
        assert configs[SyncTier.ACTIVE].channel_scope is ChannelScope.ACTIVE
        assert configs[SyncTier.TODAY].event_types == ("upcoming", "live")
        assert configs[SyncTier.FULL].event_types == ("upcoming", "live", "completed")
        assert configs[SyncTier.FULL].channel_scope is ChannelScope.ALL

    def test_intervals_come_from_settings(self) -> None:
        settings = get_settings().model_copy(
            update={"active_min_interval_seconds": 60, "full_cache_ttl_seconds": 10}
        )
        configs = build_tier_configs(settings)

        assert configs[SyncTier.ACTIVE].min_interval == timedelta(seconds=60)
        assert configs[SyncTier.FULL].cache_ttl == timedelta(seconds=10)


class TestWindows:
    def test_active_window_is_truncated_to_the_minute(self) -> None:
        window = build_tier_configs(get_settings())[SyncTier.ACTIVE].window_for(NOW)

        anchor = datetime(2026, 3, 14, 12, 34, tzinfo=UTC)
        assert window.start == anchor - timedelta(hours=2)
        assert window.end == anchor + timedelta(minutes=60)

    def test_repeated_runs_in_one_minute_share_a_window(self) -> None:
        config = build_tier_configs(get_settings())[SyncTier.FULL]
        assert config.window_for(NOW) == config.window_for(NOW + timedelta(seconds=2))

    def test_today_window_runs_from_midnight_into_the_next_morning(self) -> None:
        window = build_tier_configs(get_settings())[SyncTier.TODAY].window_for(NOW)

        assert window.start == datetime(2026, 3, 14, 0, 0, tzinfo=UTC)
        assert window.end == datetime(2026, 3, 15, 6, 0, tzinfo=UTC)

    def test_full_window(self) -> None:
        window = build_tier_configs(get_settings())[SyncTier.FULL].window_for(NOW)

        assert window.end - window.start == timedelta(hours=72 + 48)

    def test_sliding_window_key_is_stable_while_it_slides(self) -> None:
        config = build_tier_configs(get_settings())[SyncTier.FULL]

        first = config.window_for(NOW)
        later = config.window_for(NOW + timedelta(minutes=10))

        assert first != later
        assert config.window_key(first) == config.window_key(later)

    def test_sliding_window_key_reflects_the_extent(self) -> None:
        settings = get_settings().model_copy(update={"full_lookback_hours": 24})
        default = build_tier_configs(get_settings())[SyncTier.FULL]
        shorter = build_tier_configs(settings)[SyncTier.FULL]

        assert default.window_key(default.window_for(NOW)) != shorter.window_key(shorter.window_for(NOW))

    def test_day_window_key_changes_at_midnight(self) -> None:
        config = build_tier_configs(get_settings())[SyncTier.TODAY]

        morning = config.window_for(NOW.replace(hour=1))
        evening = config.window_for(NOW.replace(hour=23))
        tomorrow = config.window_for(NOW + timedelta(days=1))

        assert config.window_key(morning) == config.window_key(evening)
        assert config.window_key(morning) != config.window_key(tomorrow)
