import json
import time
from dataclasses import replace
from unittest.mock import MagicMock, patch

import re2

from security.engine import RequestSurface, ScoringEngine, ThreatAssessment
from security.patterns import Action, CategoryRules, PatternCatalog, PatternRule, ThreatCategory
from security.pipeline import ThreatPipeline
from security.rate_tracker import MemoryRateTracker
from security.threat_history import ThreatHistoryStore


def _assess(pipeline, surface, ip="203.0.113.10", fp="fp-test"):
    return pipeline.engine.assess(surface, fingerprint=fp, client_ip=ip)


def test_clean_request_is_allowed(pipeline):
    surface = RequestSurface(url="/api/items?page=2", user_agent="Mozilla/5.0", query='{"page": "2"}',
                             headers="accept: application/json")
    assessment = _assess(pipeline, surface)

    assert assessment.total_score == 0
    assert assessment.detections == []
    assert assessment.recommended_action == Action.ALLOW


def test_sql_injection_in_url(pipeline):
    """
    url chứa `' OR '1'='1` -> 1 detection nhóm sql, điểm 100, block.
    """
    assessment = _assess(pipeline, RequestSurface(url="/api/items?id=1' OR '1'='1"))

    assert assessment.total_score == 100
    assert assessment.recommended_action == Action.BLOCK
    assert len(assessment.detections) == 1
    d = assessment.detections[0]
    assert (d.category, d.target, d.matched_pattern, d.score) == ("sql", "url", "'.*or.*'.*=", 100)


def test_union_select_in_body_blocks(pipeline):
    assessment = _assess(pipeline, RequestSurface(body='{"q": "1 union select password from users"}'))

    assert assessment.recommended_action == Action.BLOCK
    assert assessment.total_score >= 100
    assert "sql" in assessment.categories()
    assert pipeline.decide(assessment).outcome.value == "reject"


def test_scores_accumulate_across_rules_and_categories(pipeline):
    """
    Mỗi rule khớp cộng nguyên điểm của nhóm, không giới hạn theo nhóm:
    xss(90) + command ../ (120) + command /etc/passwd (120) + traversal (85).
    """
    surface = RequestSurface(body='{"q": "<script>alert(1)</script> ../../etc/passwd"}')
    assessment = _assess(pipeline, surface)

    assert assessment.total_score == 90 + 120 + 120 + 85
    assert assessment.categories() == ["xss", "command", "traversal"]
    assert assessment.recommended_action == Action.BLOCK


def test_scanner_user_agent_is_only_monitored(pipeline):
    assessment = _assess(pipeline, RequestSurface(user_agent="sqlmap/1.0"))

    assert assessment.total_score == 60
    assert assessment.recommended_action == Action.MONITOR
    assert pipeline.decide(assessment).outcome.value == "continue"


def test_scan_is_idempotent_and_stateless(pipeline):
    surface = RequestSurface(url="/search?q=<iframe src=x>", body='{"cmd": "wget http://x"}')

    first = pipeline.engine.scan(surface)
    second = pipeline.engine.scan(surface)

    assert first == second
    assert len(pipeline.history) == 0
    assert pipeline.rate_tracker.current("203.0.113.10") == 0


def test_excerpt_is_truncated(pipeline):
    body = "union select " + "a" * 500
    assessment = _assess(pipeline, RequestSurface(body=body))

    assert assessment.detections
    for d in assessment.detections:
        assert len(d.excerpt) <= 100
        assert d.excerpt == body[:100]


def test_analyzed_text_is_capped(strict_settings, clock):
    """
    Chỉ max_analyzed_chars ký tự đầu của mỗi trường được đem đi so khớp.
    """
    pipeline = ThreatPipeline(replace(strict_settings, max_analyzed_chars=50), clock=clock)
    assessment = _assess(pipeline, RequestSurface(body="a" * 100 + " union select 1"))

    assert assessment.total_score == 0


def test_volume_triggers_after_threshold(pipeline):
    """
    Request thứ 100 trong bucket phút chưa bị tính, request thứ 101 bị cộng điểm volume và throttle.
    """
    surface = RequestSurface(url="/api/items")
    for _ in range(99):
        _assess(pipeline, surface)

    hundredth = _assess(pipeline, surface)
    assert hundredth.total_score == 0

    over = _assess(pipeline, surface)
    assert over.total_score == 50
    assert over.recommended_action == Action.THROTTLE
    d = over.detections[-1]
    assert (d.category, d.target, d.matched_pattern) == ("rapid_requests", "rate_limit", "")
    assert d.excerpt == "101 requests in current minute"

    # IP khác không bị ảnh hưởng
    assert _assess(pipeline, surface, ip="198.51.100.1").total_score == 0


def test_volume_counter_resets_in_next_bucket(pipeline, clock):
    surface = RequestSurface(url="/api/items")
    for _ in range(101):
        _assess(pipeline, surface)

    clock.advance(60)
    assert _assess(pipeline, surface).total_score == 0
    assert pipeline.rate_tracker.current("203.0.113.10") == 1


def test_block_wins_over_throttle(pipeline):
    for _ in range(100):
        _assess(pipeline, RequestSurface(url="/api/items"))

    assessment = _assess(pipeline, RequestSurface(url="/api/items?id=1' OR '1'='1"))
    assert assessment.total_score == 150
    assert assessment.recommended_action == Action.BLOCK


def test_history_is_updated(pipeline, clock):
    _assess(pipeline, RequestSurface(user_agent="nikto"), fp="fp-a")
    clock.advance(5)
    _assess(pipeline, RequestSurface(url="/x"), fp="fp-a")

    entry = pipeline.history.get("fp-a")
    assert entry.hit_count == 2
    assert entry.max_score == 60
    assert entry.last_seen - entry.first_seen == 5


def test_notable_request_is_logged(pipeline):
    with patch("security.engine.security_logger") as logger:
        _assess(pipeline, RequestSurface(user_agent="sqlmap"))
        _assess(pipeline, RequestSurface(headers="x-real-ip: bad-host"))

    # 60 > 50 -> log; 30 -> không log
    assert logger.warning.call_count == 1
    assert logger.warning.call_args[0][0].startswith("HIGH THREAT REQUEST DETECTED")


def test_failing_field_is_skipped(strict_settings, clock):
    """
    Lỗi khi so khớp 1 trường -> bỏ qua trường đó, các trường còn lại vẫn được phân tích.
    """
    def _search(text):
        if text == "boom":
            raise RuntimeError("regex engine failure")
        return re2.search("union", text)

    regex = MagicMock()
    regex.search.side_effect = _search
    regex.pattern = "union"
    rule = PatternRule(ThreatCategory.SQL, regex, 100, Action.BLOCK)
    catalog = PatternCatalog([CategoryRules(ThreatCategory.SQL, (rule,), 100, Action.BLOCK)])
    engine = ScoringEngine(catalog, MemoryRateTracker(clock=clock), ThreatHistoryStore(clock=clock),
                           strict_settings, clock=clock)

    with patch("security.engine.security_logger") as logger:
        detections = engine.scan(RequestSurface(url="/x?union", body="boom"))

    assert [d.target for d in detections] == ["url"]
    logger.warning.assert_called_once()


def test_safe_assess_fails_open(pipeline):
    with patch.object(pipeline.engine, "assess", side_effect=RuntimeError("store down")), \
            patch("security.pipeline.security_logger"):
        assessment = pipeline.safe_assess(RequestSurface(url="/x"), "203.0.113.10", "GET", "/x")

    assert isinstance(assessment, ThreatAssessment)
    assert assessment.degraded is True
    assert assessment.total_score == 0
    assert assessment.recommended_action == Action.ALLOW
    assert assessment.fingerprint


def test_backtracking_payload_is_scanned_in_linear_time(pipeline):
    """
    Body 64 KiB lặp "' or " (không có "=") là mẫu gây backtracking đa thức với `'.*or.*'.*=`.
    Engine RE2 phải quét xong ngay, không treo worker.
    """
    surface = RequestSurface(body="' or " * 13000, query="' or " * 13000)

    start = time.perf_counter()
    detections = pipeline.engine.scan(surface)
    elapsed = time.perf_counter() - start

    assert detections == []
    assert elapsed < 2.0


def test_cookie_is_scanned_but_redacted_in_excerpt(pipeline):
    headers = "accept: */*\ncookie: session=1' OR '1'='1"
    assessment = _assess(pipeline, RequestSurface(headers=headers))

    assert assessment.recommended_action == Action.BLOCK
    d = assessment.detections[0]
    assert (d.category, d.target) == ("sql", "headers")
    assert d.excerpt == "accept: */*\ncookie: [redacted]"
    assert "session" not in json.dumps(assessment.to_log_dict())
