from unittest.mock import MagicMock, patch

import pytest

from security.config import AnomalyThresholds
from security.session_anomaly import HIGH_FREQUENCY, MULTIPLE_IPS, MULTIPLE_USER_AGENTS, SessionAnomalyDetector


@pytest.fixture(autouse=True)
def quiet_logger():
    with patch("security.session_anomaly.security_logger") as logger:
        yield logger


@pytest.fixture
def detector(clock):
    return SessionAnomalyDetector(AnomalyThresholds(), ttl_seconds=1800, clock=clock)


def test_four_ips_raise_one_medium_anomaly(detector, clock):
    """
    IP thứ 4 -> đúng 1 bất thường multiple_ips (medium). Các request sau không ghi lặp.
    """
    raised = []
    for i in range(1, 5):
        clock.advance(1)
        raised.extend(detector.observe("u-1", f"203.0.113.{i}", "Mozilla/5.0"))

    assert [(a.type, a.severity) for a in raised] == [(MULTIPLE_IPS, "medium")]

    clock.advance(1)
    assert detector.observe("u-1", "203.0.113.5", "Mozilla/5.0") == []

    profile = detector.get_profile("u-1")
    assert len(profile.distinct_ips) == 5
    assert [a.type for a in profile.anomalies] == [MULTIPLE_IPS]


def test_three_user_agents_raise_low_anomaly(detector, clock):
    raised = []
    for ua in ("Chrome", "Firefox", "Safari"):
        clock.advance(1)
        raised.extend(detector.observe("u-1", "203.0.113.1", ua))

    assert [(a.type, a.severity) for a in raised] == [(MULTIPLE_USER_AGENTS, "low")]


def test_first_request_is_not_high_frequency(detector):
    assert detector.observe("u-1", "203.0.113.1", "ua") == []


def test_high_frequency_and_hook(clock, quiet_logger):
    """
    11 request trong cùng 1 giây -> 11 req/s > 10 -> high_frequency (high), gọi hook và log ERROR.
    """
    hook = MagicMock()
    detector = SessionAnomalyDetector(clock=clock, on_high_severity=hook)

    raised = []
    for _ in range(11):
        raised.extend(detector.observe("u-1", "203.0.113.1", "ua"))

    assert [(a.type, a.severity) for a in raised] == [(HIGH_FREQUENCY, "high")]
    hook.assert_called_once()
    profile, anomalies = hook.call_args[0]
    assert profile.user_id == "u-1"
    assert anomalies[0].type == HIGH_FREQUENCY
    quiet_logger.error.assert_called_once()


def test_anomaly_is_raised_again_after_recovery(detector, clock):
    for _ in range(11):
        detector.observe("u-1", "203.0.113.1", "ua")

    # Tần suất giảm xuống dưới ngưỡng -> hết trạng thái bất thường
    clock.advance(2)
    assert detector.observe("u-1", "203.0.113.1", "ua") == []

    # Vượt ngưỡng lần nữa -> ghi lần mới
    raised = []
    for _ in range(9):
        raised.extend(detector.observe("u-1", "203.0.113.1", "ua"))

    assert [a.type for a in raised] == [HIGH_FREQUENCY]
    assert [a.type for a in detector.get_profile("u-1").anomalies] == [HIGH_FREQUENCY, HIGH_FREQUENCY]


def test_profiles_are_per_user(detector, clock):
    for i in range(1, 5):
        clock.advance(1)
        detector.observe(f"u-{i}", f"203.0.113.{i}", "ua")

    assert len(detector) == 4
    assert detector.get_profile("u-1").request_count == 1


def test_profile_expires_after_30_minutes_idle(detector, clock):
    detector.observe("u-1", "203.0.113.1", "ua")

    clock.advance(1799)
    assert detector.get_profile("u-1") is not None

    clock.advance(1)
    assert detector.get_profile("u-1") is None
    assert detector.purge_expired() == 0   # đã bị xoá khi get()

    detector.observe("u-2", "203.0.113.1", "ua")
    clock.advance(1800)
    assert detector.purge_expired() == 1


def test_anomaly_is_logged_with_session_stats(detector, clock, quiet_logger):
    for i in range(1, 5):
        clock.advance(1)
        detector.observe("u-1", f"203.0.113.{i}", "ua")

    quiet_logger.warning.assert_called_once()
    details = quiet_logger.warning.call_args[1]["extra"]["details"]
    assert '"multiple_ips"' in details
    assert '"request_count": 4' in details
