import json
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict

from log.security_log import security_logger
from security.config import SecuritySettings
from security.engine import ThreatAssessment
from security.patterns import Action

# Nội dung trả về khi chặn: chung chung, không lộ pattern/điểm để kẻ tấn công không dò được ngưỡng
BLOCK_RESPONSE_BODY = {
    "error": "Request blocked for security reasons",
    "code": "SECURITY_THREAT_DETECTED",
}


class Outcome(str, Enum):
    REJECT = "reject"
    DELAY = "delay"
    CONTINUE = "continue"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    delay_seconds: float = 0.0


class DecisionOrchestrator:
    """
    Chuyển ThreatAssessment thành kết quả ở tầng HTTP:
    - action == block HOẶC total_score > blocking_threshold -> REJECT (403)
    - action == throttle -> DELAY cố định rồi cho đi tiếp.
      Đây chỉ là tín hiệu back-pressure mềm: mỗi request bị throttle tự chờ độc lập,
      nên khi bị tấn công kéo dài sẽ có nhiều request treo chờ cùng lúc.
    - còn lại (allow/monitor) -> CONTINUE
    """

    def __init__(self, settings: SecuritySettings):
        self.settings = settings
        self._lock = threading.Lock()
        self._blocked = 0
        self._throttled = 0

    @property
    def blocking_threshold(self) -> int:
        return self.settings.profile.blocking_threshold

    def decide(self, assessment: ThreatAssessment) -> Decision:
        if (assessment.recommended_action == Action.BLOCK
                or assessment.total_score > self.blocking_threshold):
            with self._lock:
                self._blocked += 1
            security_logger.error(
                "REQUEST BLOCKED ip=%s score=%s", assessment.client_ip, assessment.total_score,
                extra={"details": json.dumps(assessment.to_log_dict(), ensure_ascii=False)},
            )
            return Decision(Outcome.REJECT)

        if assessment.recommended_action == Action.THROTTLE:
            with self._lock:
                self._throttled += 1
            return Decision(Outcome.DELAY, delay_seconds=self.settings.throttle_delay_seconds)

        return Decision(Outcome.CONTINUE)

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return {"blocked_requests": self._blocked, "throttled_requests": self._throttled}
