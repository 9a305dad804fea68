"""Unit tests for SourceManager."""

from unittest.mock import patch

import pytest

from cdp_engine.src.SourceManager import SourceManager

VENUES = ["coinbase", "kraken", "coingecko"]


@pytest.fixture
def clock():
    with patch("cdp_engine.src.SourceManager.time.time") as mock_time:
        mock_time.return_value = 1_000.0
        yield mock_time


class TestSourceManagerConfig:
    """Test construction and validation."""

    def test_venues_start_active(self) -> None:
        manager = SourceManager(VENUES)

        assert manager.sources == VENUES
        assert manager.active_sources() == VENUES
        assert manager.base_backoff_seconds == SourceManager.DEFAULT_BASE_BACKOFF_SECONDS
        assert manager.max_backoff_seconds == SourceManager.DEFAULT_MAX_BACKOFF_SECONDS

    def test_no_venues(self) -> None:
        assert SourceManager([]).active_sources() == []

    def test_sources_list_is_copied(self) -> None:
        venues = list(VENUES)
        manager = SourceManager(venues)
        venues.append("binance")

        assert manager.sources == VENUES

    @pytest.mark.parametrize("base, cap", [(0, 300), (-1.0, 300), (10.0, 5.0)])
    def test_rejects_bad_backoff(self, base, cap) -> None:
        with pytest.raises(ValueError, match="backoff"):
            SourceManager(VENUES, base_backoff_seconds=base, max_backoff_seconds=cap)

    def test_fresh_status(self) -> None:
        status = SourceManager(VENUES).status("kraken")

        assert (status.consecutive_failures, status.total_failures, status.total_successes) == (0, 0, 0)
        assert status.backoff_until == 0.0
        assert status.last_success_at is None
        assert status.last_error is None

    def test_untracked_venue(self) -> None:
        """Every per-venue query rejects names that were never configured."""
        manager = SourceManager(VENUES)
        with pytest.raises(KeyError, match="binance"):
            manager.status("binance")
        with pytest.raises(KeyError):
            manager.record_failure("binance")
        with pytest.raises(KeyError):
            manager.record_success("binance")
        with pytest.raises(KeyError):
            manager.backoff_remaining("binance")


class TestSourceManagerBackoff:
    """Test exponential backoff after failed rounds."""

    def test_doubles_per_consecutive_failure(self, clock) -> None:
        manager = SourceManager(VENUES, base_backoff_seconds=5.0, max_backoff_seconds=300.0)

        durations = [manager.record_failure("kraken") for _ in range(5)]

        assert durations == [5.0, 10.0, 20.0, 40.0, 80.0]
        assert manager.status("kraken").backoff_until == 1_080.0

    def test_capped(self, clock) -> None:
        manager = SourceManager(VENUES, base_backoff_seconds=100.0, max_backoff_seconds=150.0)

        durations = [manager.record_failure("kraken") for _ in range(3)]

        assert durations == [100.0, 150.0, 150.0]

    def test_failure_keeps_last_error(self, clock) -> None:
        manager = SourceManager(VENUES)
        manager.record_failure("coingecko", "HTTP 429: rate limited")
        manager.record_failure("coingecko", "no quote for icp")

        status = manager.status("coingecko")
        assert status.consecutive_failures == 2
        assert status.total_failures == 2
        assert status.last_error == "no quote for icp"

    def test_venue_skipped_until_backoff_expires(self, clock) -> None:
        manager = SourceManager(VENUES, base_backoff_seconds=30.0)
        manager.record_failure("kraken", "timeout")

        clock.return_value = 1_010.0
        assert manager.active_sources() == ["coinbase", "coingecko"]
        assert manager.backoff_remaining("kraken") == 20.0

        # Usable again exactly at backoff_until
        clock.return_value = 1_030.0
        assert manager.active_sources() == VENUES
        assert manager.backoff_remaining("kraken") == 0.0

        clock.return_value = 2_000.0
        assert manager.backoff_remaining("kraken") == 0.0

    def test_other_venues_unaffected(self, clock) -> None:
        manager = SourceManager(VENUES)
        manager.record_failure("coinbase")

        assert manager.status("kraken").consecutive_failures == 0
        assert manager.backoff_remaining("kraken") == 0.0


class TestSourceManagerRecovery:
    """Test that good quotes clear backoff."""

    def test_success_clears_backoff(self, clock) -> None:
        manager = SourceManager(VENUES, base_backoff_seconds=60.0)
        manager.record_failure("kraken", "boom")
        manager.record_failure("kraken", "boom")

        clock.return_value = 1_001.5
        manager.record_success("kraken")

        status = manager.status("kraken")
        assert status.consecutive_failures == 0
        assert status.backoff_until == 0.0
        assert status.last_error is None
        assert status.last_success_at == 1_001.5
        assert "kraken" in manager.active_sources()

    def test_backoff_restarts_from_base(self, clock) -> None:
        """After a recovery the next failure is treated as the first one."""
        manager = SourceManager(VENUES, base_backoff_seconds=5.0)
        for _ in range(3):
            manager.record_failure("coinbase")
        manager.record_success("coinbase")

        assert manager.record_failure("coinbase") == 5.0

    def test_lifetime_counters(self, clock) -> None:
        manager = SourceManager(VENUES)
        manager.record_failure("coinbase")
        manager.record_success("coinbase")
        manager.record_success("coinbase")
        manager.record_failure("coinbase")

        status = manager.status("coinbase")
        assert status.total_failures == 2
        assert status.total_successes == 2
        assert status.consecutive_failures == 1
