import re2  # google-re2: engine thời gian tuyến tính, không backtracking
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from security.config import SensitivityProfile

"""
Bảng pattern phát hiện tấn công, nhóm theo loại (category).
- Mỗi category có: danh sách regex, điểm cộng cho MỖI rule khớp trên MỖI trường, và hành động đề xuất.
- Bảng chỉ là dữ liệu, được compile 1 lần khi khởi tạo pipeline.
- Compile bằng RE2 (google-re2): thời gian so khớp tuyến tính theo độ dài chuỗi,
  payload cố tình gây backtracking (vd: "' or " lặp lại) không thể treo worker.
  RE2 không hỗ trợ backreference/lookaround, pattern mới phải tuân theo giới hạn này.
- Nhóm command phụ thuộc SensitivityProfile: profile relaxed tắt các pattern quá chung chung
  (nối lệnh bằng `||`, thay thế lệnh bằng backtick / $()) và dùng điểm khác.
"""


class Action(str, Enum):
    ALLOW = "allow"
    MONITOR = "monitor"
    THROTTLE = "throttle"
    BLOCK = "block"


class ThreatCategory(str, Enum):
    SQL = "sql"
    XSS = "xss"
    COMMAND = "command"
    TRAVERSAL = "traversal"
    BOT_USER_AGENT = "bot_user_agent"
    SUSPICIOUS_HEADERS = "suspicious_headers"
    RAPID_REQUESTS = "rapid_requests"


@dataclass(frozen=True)
class PatternRule:
    category: ThreatCategory
    regex: Any              # re2._Regexp
    score: int
    action: Action
    pattern: str = ""       # Pattern gốc, không kèm cờ inline

    @property
    def source(self) -> str:
        return self.pattern or self.regex.pattern


@dataclass(frozen=True)
class CategoryRules:
    """1 category đã compile: các rule theo đúng thứ tự khai báo."""
    category: ThreatCategory
    rules: Tuple[PatternRule, ...]
    score: int
    action: Action


@dataclass(frozen=True)
class RuleResult:
    rule: PatternRule
    matched: bool


# Cờ inline của RE2: i = không phân biệt hoa thường, m = ^/$ khớp theo từng dòng
_I = "i"

# Pattern của từng category: (pattern, flags)
SQL_PATTERNS = [
    (r"union.*select", _I),
    (r"'.*or.*'.*=", _I),
    (r"drop.*table", _I),
    (r"insert.*into", _I),
    (r"delete.*from", _I),
    (r"update.*set", _I),
    (r"'.*or.*1=1", _I),
    (r"exec.*xp_cmdshell", _I),
    (r"information_schema", _I),
]

XSS_PATTERNS = [
    (r"<script.*>.*</script>", _I),
    (r"javascript:", _I),
    (r"vbscript:", _I),
    (r"onload\s*=", _I),
    (r"onerror\s*=", _I),
    (r"onclick\s*=", _I),
    (r"<iframe.*>", _I),
    (r"document\.cookie", _I),
    (r"eval\s*\(", _I),
    (r"expression\s*\(", _I),
]

# Chỉ bật ở profile strict: rất hay khớp nhầm với dữ liệu test khi phát triển
COMMAND_STRICT_PATTERNS = [
    (r";.*\|\|", ""),
    (r"`.*`", ""),
    (r"\$\(.*\)", ""),
]

COMMAND_PATTERNS = [
    (r"\.\./", ""),
    (r"/etc/passwd", _I),
    (r"/bin/sh", _I),
    (r"cmd\.exe", _I),
    (r"powershell", _I),
    (r"nc\s+-", _I),
    (r"wget\s+", _I),
    (r"curl\s+.*>", _I),
]

TRAVERSAL_PATTERNS = [
    (r"\.\.[/\\]", ""),
    (r"%2e%2e", _I),
    (r"\.\.%2f", _I),
    (r"\.\.%5c", _I),
    (r"%252e%252e", _I),
]

BOT_USER_AGENT_PATTERNS = [
    (r"sqlmap", _I),
    (r"nikto", _I),
    (r"burpsuite", _I),
    (r"nessus", _I),
    (r"nmap", _I),
    (r"masscan", _I),
    (r"zap", _I),
    (r"w3af", _I),
    (r"acunetix", _I),
    (r"appscan", _I),
]

# Trường headers được serialize thành từng dòng "name: value"
SUSPICIOUS_HEADER_PATTERNS = [
    (r"^x-forwarded-for:.*,.*,", _I + "m"),          # Đi qua nhiều proxy
    (r"^x-real-ip:\s*[0-9.]*[^0-9.\s]", _I + "m"),   # Giá trị không phải IPv4
]

# Nhóm volume không có regex: kích hoạt khi số request/phút vượt ngưỡng
RAPID_REQUESTS_SCORE = 50


def _compile(category: ThreatCategory, specs: Sequence[Tuple[str, str]], score: int, action: Action) -> CategoryRules:
    rules = tuple(
        PatternRule(category, re2.compile(f"(?{flags}){p}" if flags else p), score, action, pattern=p)
        for p, flags in specs
    )
    return CategoryRules(category=category, rules=rules, score=score, action=action)


class PatternCatalog:
    """
    Bảng tra cứu category -> rule. Bất biến sau khi khởi tạo.
    Thứ tự duyệt category cố định để danh sách detection luôn ổn định.
    """

    def __init__(self, categories: Sequence[CategoryRules], rapid_requests_score: int = RAPID_REQUESTS_SCORE):
        self._categories: Dict[ThreatCategory, CategoryRules] = {c.category: c for c in categories}
        self.rapid_requests = CategoryRules(
            category=ThreatCategory.RAPID_REQUESTS, rules=(), score=rapid_requests_score, action=Action.THROTTLE
        )

    @classmethod
    def for_profile(cls, profile: SensitivityProfile, rapid_requests_score: int = RAPID_REQUESTS_SCORE) -> "PatternCatalog":
        command_specs = (COMMAND_STRICT_PATTERNS if profile.strict_command_patterns else []) + COMMAND_PATTERNS
        return cls(
            [
                _compile(ThreatCategory.SQL, SQL_PATTERNS, 100, Action.BLOCK),
                _compile(ThreatCategory.XSS, XSS_PATTERNS, 90, Action.BLOCK),
                _compile(ThreatCategory.COMMAND, command_specs, profile.command_score, Action.BLOCK),
                _compile(ThreatCategory.TRAVERSAL, TRAVERSAL_PATTERNS, 85, Action.BLOCK),
                _compile(ThreatCategory.BOT_USER_AGENT, BOT_USER_AGENT_PATTERNS, 60, Action.MONITOR),
                _compile(ThreatCategory.SUSPICIOUS_HEADERS, SUSPICIOUS_HEADER_PATTERNS, 30, Action.MONITOR),
            ],
            rapid_requests_score=rapid_requests_score,
        )

    def categories(self) -> List[CategoryRules]:
        return list(self._categories.values())

    def get(self, category) -> Optional[CategoryRules]:
        try:
            return self._categories.get(ThreatCategory(category))
        except ValueError:
            return None

    def evaluate(self, category, text: str) -> List[RuleResult]:
        """
        So khớp toàn bộ rule của 1 category với 1 chuỗi.
        Hàm thuần: không ghi state, cùng input luôn cho cùng output.
        """
        rules = self.get(category)
        if rules is None:
            raise KeyError(f"Unknown threat category: {category!r}")
        return [RuleResult(rule=r, matched=r.regex.search(text) is not None) for r in rules.rules]
