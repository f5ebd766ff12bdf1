import json
import time
from typing import Any, Callable, Dict, List, Optional

from log.security_log import security_logger
from security.config import SecuritySettings
from security.decision import Decision, DecisionOrchestrator
from security.engine import RequestSurface, ScoringEngine, ThreatAssessment
from security.fingerprint import build_fingerprint
from security.patterns import PatternCatalog
from security.rate_tracker import MemoryRateTracker, RedisRateTracker
from security.redis_client import get_redis
from security.session_anomaly import Anomaly, SessionAnomalyDetector
from security.threat_history import ThreatHistoryStore


class ThreatPipeline:
    """
    Sở hữu toàn bộ store (rate, threat history, session) và các thành phần xử lý.
    Mỗi app/instance tạo 1 pipeline riêng rồi inject vào middleware, không dùng biến toàn cục.
    """

    def __init__(self, settings: SecuritySettings, rate_tracker=None,
                 history: Optional[ThreatHistoryStore] = None,
                 sessions: Optional[SessionAnomalyDetector] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.clock = clock
        self.catalog = PatternCatalog.for_profile(settings.profile, rapid_requests_score=settings.rate_score)
        self.rate_tracker = rate_tracker or MemoryRateTracker(settings.ttl.rate_window, clock=clock)
        self.history = history or ThreatHistoryStore(settings.ttl.threat_history, clock=clock)
        self.sessions = sessions or SessionAnomalyDetector(settings.anomaly, settings.ttl.session_profile, clock=clock)
        self.engine = ScoringEngine(self.catalog, self.rate_tracker, self.history, settings, clock=clock)
        self.orchestrator = DecisionOrchestrator(settings)

    @classmethod
    def from_settings(cls, settings: SecuritySettings, clock: Callable[[], float] = time.time) -> "ThreatPipeline":
        rate_tracker = None
        if settings.rate_backend == "redis":
            rate_tracker = RedisRateTracker(get_redis(settings.redis_url), settings.ttl.rate_window, clock=clock)
        return cls(settings, rate_tracker=rate_tracker, clock=clock)

    def safe_assess(self, surface: RequestSurface, client_ip: str, method: str, path: str) -> ThreatAssessment:
        """
        Chạy engine. Bất kỳ lỗi nội bộ nào -> log và trả assessment rỗng (allow, degraded=True):
        lớp phòng thủ lỗi thì không được chặn traffic hợp lệ.
        """
        fingerprint = ""
        try:
            fingerprint = build_fingerprint(client_ip, surface.user_agent, method, path)
            return self.engine.assess(surface, fingerprint=fingerprint, client_ip=client_ip)
        except Exception:
            security_logger.exception("Error in threat detection pipeline ip=%s path=%s", client_ip, path)
            return ThreatAssessment.empty(fingerprint=fingerprint, client_ip=client_ip,
                                          degraded=True, timestamp=self.clock())

    def decide(self, assessment: ThreatAssessment) -> Decision:
        return self.orchestrator.decide(assessment)

    def observe_session(self, user_id: str, client_ip: str, user_agent: str) -> List[Anomaly]:
        return self.sessions.observe(user_id, client_ip, user_agent)

    def sweep(self) -> Dict[str, int]:
        """Dọn chủ động các entry đã hết hạn ở cả 3 store."""
        removed = {
            "threat_history": self.history.sweep(),
            "rate_windows": self.rate_tracker.purge_expired(),
            "session_profiles": self.sessions.purge_expired(),
        }
        security_logger.info("Security cache cleanup completed", extra={"details": json.dumps(removed)})
        return removed

    def metrics_snapshot(self) -> Dict[str, Any]:
        """
        Ảnh chụp số liệu để xuất định kỳ (không dùng cho từng request).
        active_threats: số fingerprint có max_score > active_threat_score.
        """
        stats = self.history.stats(active_threshold=self.settings.active_threat_score)
        snapshot = {
            "timestamp": self.clock(),
            "profile": self.settings.profile.name,
            "tracked_fingerprints": stats.tracked_fingerprints,
            "active_threats": stats.active_threats,
            "total_hits": stats.total_hits,
            "high_threat_hits": stats.high_threat_hits,
            "rate_windows": self.rate_tracker.window_count(),
            "session_profiles": len(self.sessions),
            "top_threats": [e.to_dict() for e in stats.top_threats],
        }
        snapshot.update(self.orchestrator.counters())
        return snapshot

    def log_metrics(self) -> Dict[str, Any]:
        """
        Ghi snapshot ra log. Profile strict chỉ ghi khi thật sự có mối đe doạ hoặc request bị chặn.
        """
        snapshot = self.metrics_snapshot()
        if (self.settings.profile.log_clean_requests
                or snapshot["active_threats"] > 0 or snapshot["blocked_requests"] > 0):
            security_logger.info("Security Metrics", extra={"details": json.dumps(snapshot, ensure_ascii=False)})
        return snapshot
