import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from log.security_log import security_logger
from security.config import AnomalyThresholds
from security.keyspace import k_session
from utils.cache import TTLCache

"""
Phát hiện bất thường hành vi cho phiên ĐÃ XÁC THỰC (request không có user thì bỏ qua).
- Theo dõi theo user: tập IP, tập User-Agent, tổng số request, first_seen, last_activity.
- Hồ sơ hết hạn sau 30 phút không hoạt động.
- Mỗi loại bất thường chỉ được ghi 1 lần cho mỗi lần vượt ngưỡng (không ghi lặp ở mọi request sau đó).
  Nếu điều kiện trở lại bình thường rồi vượt ngưỡng lần nữa thì ghi lần mới.
- Chỉ phát hiện, KHÔNG tự động xử lý (huỷ phiên...). Caller có thể gắn on_high_severity
  để tự quyết định hành động.
"""

MULTIPLE_IPS = "multiple_ips"
MULTIPLE_USER_AGENTS = "multiple_user_agents"
HIGH_FREQUENCY = "high_frequency"


@dataclass
class Anomaly:
    type: str
    severity: str
    details: str
    detected_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "severity": self.severity,
                "details": self.details, "detected_at": self.detected_at}


@dataclass
class SessionBehaviorProfile:
    user_id: str
    first_seen: float
    last_activity: float
    distinct_ips: Set[str] = field(default_factory=set)
    distinct_user_agents: Set[str] = field(default_factory=set)
    request_count: int = 0
    anomalies: List[Anomaly] = field(default_factory=list)
    active_anomalies: Set[str] = field(default_factory=set)   # Loại bất thường đang ở trạng thái vượt ngưỡng

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "distinct_ips": sorted(self.distinct_ips),
            "distinct_user_agents": sorted(self.distinct_user_agents),
            "request_count": self.request_count,
            "first_seen": self.first_seen,
            "last_activity": self.last_activity,
            "anomalies": [a.to_dict() for a in self.anomalies],
        }


class SessionAnomalyDetector:
    def __init__(self, thresholds: Optional[AnomalyThresholds] = None, ttl_seconds: int = 1800,
                 clock: Callable[[], float] = time.time,
                 on_high_severity: Optional[Callable[[SessionBehaviorProfile, List[Anomaly]], None]] = None):
        self.thresholds = thresholds or AnomalyThresholds()
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.on_high_severity = on_high_severity
        self._profiles = TTLCache(default_ttl=ttl_seconds, clock=clock)

    def _check(self, profile: SessionBehaviorProfile, now: float) -> Dict[str, Anomaly]:
        """Trả về các bất thường đang thoả điều kiện ở thời điểm hiện tại (chưa lọc trùng)."""
        t = self.thresholds
        found: Dict[str, Anomaly] = {}

        if len(profile.distinct_ips) > t.max_ips:
            found[MULTIPLE_IPS] = Anomaly(
                MULTIPLE_IPS, "medium", f"Session accessed from {len(profile.distinct_ips)} different IPs", now)

        if len(profile.distinct_user_agents) > t.max_user_agents:
            found[MULTIPLE_USER_AGENTS] = Anomaly(
                MULTIPLE_USER_AGENTS, "low", f"Session used {len(profile.distinct_user_agents)} different user agents", now)

        # Tối thiểu 1 giây để request đầu tiên của phiên không bị tính là tần suất vô hạn
        elapsed = max(now - profile.first_seen, 1.0)
        rps = profile.request_count / elapsed
        if rps > t.max_requests_per_second:
            found[HIGH_FREQUENCY] = Anomaly(HIGH_FREQUENCY, "high", f"{rps:.2f} requests per second", now)

        return found

    def observe(self, user_id: str, client_ip: str, user_agent: str) -> List[Anomaly]:
        """
        Ghi nhận 1 request của user và trả về các bất thường MỚI phát sinh ở request này.
        """
        now = self.clock()
        key = k_session(user_id)

        with self._profiles.lock:
            profile = self._profiles.get(key)
            if profile is None:
                profile = SessionBehaviorProfile(user_id=user_id, first_seen=now, last_activity=now)

            profile.distinct_ips.add(client_ip)
            profile.distinct_user_agents.add(user_agent)
            profile.request_count += 1
            profile.last_activity = now

            current = self._check(profile, now)
            new_anomalies = [a for kind, a in current.items() if kind not in profile.active_anomalies]
            profile.active_anomalies = set(current)
            profile.anomalies.extend(new_anomalies)

            self._profiles.set(key, profile)   # Gia hạn TTL 30 phút

        if new_anomalies:
            self._report(profile, new_anomalies, now)
        return new_anomalies

    def _report(self, profile: SessionBehaviorProfile, anomalies: List[Anomaly], now: float) -> None:
        security_logger.warning(
            "SESSION ANOMALY DETECTED user=%s", profile.user_id,
            extra={"details": json.dumps({
                "user_id": profile.user_id,
                "anomalies": [a.to_dict() for a in anomalies],
                "session_stats": {
                    "ips": sorted(profile.distinct_ips),
                    "user_agents": sorted(profile.distinct_user_agents),
                    "request_count": profile.request_count,
                    "duration": round(now - profile.first_seen, 3),
                },
            }, ensure_ascii=False)},
        )

        high = [a for a in anomalies if a.severity == "high"]
        if high:
            security_logger.error(
                "HIGH SEVERITY SESSION ANOMALY user=%s", profile.user_id,
                extra={"details": json.dumps([a.to_dict() for a in high], ensure_ascii=False)},
            )
            if self.on_high_severity is not None:
                self.on_high_severity(profile, high)

    def get_profile(self, user_id: str) -> Optional[SessionBehaviorProfile]:
        return self._profiles.get(k_session(user_id))

    def __len__(self) -> int:
        return len(self._profiles)

    def purge_expired(self) -> int:
        return self._profiles.purge_expired()
