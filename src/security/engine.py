import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from log.security_log import security_logger
from security.config import SecuritySettings
from security.patterns import Action, PatternCatalog, ThreatCategory
from security.threat_history import ThreatHistoryStore

"""
Scoring Engine: chạy toàn bộ bảng pattern trên mọi bề mặt của request, cộng điểm và đề xuất hành động.

Thuật toán:
1. Với mỗi cặp (category, trường) -> so khớp mọi rule của category trên nội dung trường.
2. Mỗi rule khớp cộng nguyên điểm của category (không gộp, không giới hạn theo category):
   payload nhồi nhiều chữ ký tấn công khác nhau sẽ có điểm cao hơn hẳn payload chỉ có 1 chữ ký.
3. Hỏi Rate Tracker số request trong bucket phút hiện tại; vượt ngưỡng -> cộng điểm volume.
4. Hành động: có block -> block; không có block mà có throttle -> throttle;
   chỉ có monitor -> monitor; không khớp gì -> allow.
5. Tạo ThreatAssessment, cập nhật Threat History, ghi log cảnh báo khi điểm vượt ngưỡng "đáng chú ý".
"""

# Thứ tự các trường được phân tích (ảnh hưởng thứ tự detection)
ANALYZED_FIELDS = ("url", "user_agent", "referer", "body", "query", "headers")

_ACTION_RANK = {Action.ALLOW: 0, Action.MONITOR: 1, Action.THROTTLE: 2, Action.BLOCK: 3}

# Header chứa bí mật: vẫn được so khớp nhưng giá trị bị che trong excerpt (và do đó trong log)
REDACTED_HEADERS = ("cookie",)


def _excerpt(target: str, text: str, length: int) -> str:
    if target == "headers":
        lines = []
        for line in text.split("\n"):
            name = line.split(":", 1)[0].strip().lower()
            lines.append(f"{name}: [redacted]" if name in REDACTED_HEADERS else line)
        text = "\n".join(lines)
    return text[:length]


@dataclass(frozen=True)
class RequestSurface:
    """Các bề mặt phân tích của 1 request, đã serialize thành chuỗi."""
    url: str = ""
    user_agent: str = ""
    referer: str = ""
    body: str = "{}"
    query: str = "{}"
    headers: str = ""

    def fields(self) -> Dict[str, str]:
        return {name: getattr(self, name) or "" for name in ANALYZED_FIELDS}


@dataclass(frozen=True)
class Detection:
    category: str
    target: str
    matched_pattern: str
    score: int
    excerpt: str

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "target": self.target, "matched_pattern": self.matched_pattern,
                "score": self.score, "excerpt": self.excerpt}


@dataclass
class ThreatAssessment:
    fingerprint: str
    total_score: int
    detections: List[Detection]
    recommended_action: Action
    timestamp: float
    client_ip: str = ""
    degraded: bool = False    # True khi pipeline lỗi và phải trả về kết quả rỗng (fail-open)

    @classmethod
    def empty(cls, fingerprint: str = "", client_ip: str = "", degraded: bool = False,
              timestamp: Optional[float] = None) -> "ThreatAssessment":
        return cls(fingerprint=fingerprint, total_score=0, detections=[], recommended_action=Action.ALLOW,
                   timestamp=time.time() if timestamp is None else timestamp,
                   client_ip=client_ip, degraded=degraded)

    def categories(self) -> List[str]:
        seen: List[str] = []
        for d in self.detections:
            if d.category not in seen:
                seen.append(d.category)
        return seen

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "ip": self.client_ip,
            "threat_score": self.total_score,
            "recommended_action": self.recommended_action.value,
            "threats": [d.to_dict() for d in self.detections],
            "degraded": self.degraded,
            "timestamp": self.timestamp,
        }


class ScoringEngine:
    def __init__(self, catalog: PatternCatalog, rate_tracker, history: ThreatHistoryStore,
                 settings: SecuritySettings, clock: Callable[[], float] = time.time):
        self.catalog = catalog
        self.rate_tracker = rate_tracker
        self.history = history
        self.settings = settings
        self.clock = clock

    def scan(self, surface: RequestSurface) -> List[Detection]:
        """
        Chỉ so khớp pattern (không đụng tới rate tracker/history): cùng surface luôn cho cùng kết quả.
        Lỗi khi so khớp 1 trường -> log và coi như trường đó không có phát hiện.
        """
        limit = self.settings.max_analyzed_chars
        excerpt_len = self.settings.excerpt_length
        fields = {name: text[:limit] for name, text in surface.fields().items()}

        detections: List[Detection] = []
        for category in self.catalog.categories():
            for rule in category.rules:
                for target, text in fields.items():
                    try:
                        matched = rule.regex.search(text) is not None
                    except Exception as ex:
                        security_logger.warning(
                            "Pattern evaluation failed category=%s target=%s: %s",
                            category.category.value, target, ex,
                        )
                        continue
                    if matched:
                        detections.append(Detection(
                            category=category.category.value,
                            target=target,
                            matched_pattern=rule.source,
                            score=category.score,
                            excerpt=_excerpt(target, text, excerpt_len),
                        ))
        return detections

    def _recommend(self, detections: List[Detection]) -> Action:
        action = Action.ALLOW
        for d in detections:
            if d.category == ThreatCategory.RAPID_REQUESTS.value:
                candidate = self.catalog.rapid_requests.action
            else:
                candidate = self.catalog.get(d.category).action
            if _ACTION_RANK[candidate] > _ACTION_RANK[action]:
                action = candidate
        return action

    def assess(self, surface: RequestSurface, fingerprint: str, client_ip: str) -> ThreatAssessment:
        now = self.clock()
        detections = self.scan(surface)

        # Đếm volume: request thứ (ngưỡng + 1) trong bucket phút bắt đầu bị cộng điểm
        count = self.rate_tracker.increment(client_ip)
        if count > self.settings.rate_threshold:
            rapid = self.catalog.rapid_requests
            detections.append(Detection(
                category=rapid.category.value,
                target="rate_limit",
                matched_pattern="",
                score=rapid.score,
                excerpt=f"{count} requests in current minute",
            ))

        assessment = ThreatAssessment(
            fingerprint=fingerprint,
            total_score=sum(d.score for d in detections),
            detections=detections,
            recommended_action=self._recommend(detections),
            timestamp=now,
            client_ip=client_ip,
        )

        self.history.record(fingerprint, assessment.total_score, now=now)

        if assessment.total_score > self.settings.notable_score:
            security_logger.warning(
                "HIGH THREAT REQUEST DETECTED ip=%s score=%s action=%s",
                client_ip, assessment.total_score, assessment.recommended_action.value,
                extra={"details": json.dumps(assessment.to_log_dict(), ensure_ascii=False)},
            )
        return assessment
