import asyncio
import json
from typing import Dict, List, Union
from urllib.parse import parse_qs

from fastapi import Request
from fastapi.responses import JSONResponse

from auth.oauth2 import resolve_user_id
from log.security_log import security_logger
from security.decision import BLOCK_RESPONSE_BODY, Outcome
from security.engine import RequestSurface
from security.pipeline import ThreatPipeline
from utils.get_ip_client import get_client_ip

# Khoá trên request.state để middleware/handler phía sau đọc kết quả đánh giá
THREAT_STATE_KEY = "threat_assessment"
CLIENT_IP_STATE_KEY = "client_ip"
ANOMALY_STATE_KEY = "session_anomalies"

# Header đã được phân tích ở trường riêng hoặc là token xác thực -> không đưa vào trường headers.
# Cookie vẫn được phân tích (SQLi/XSS qua cookie), giá trị bị che trong excerpt.
_HEADERS_EXCLUDED = {"user-agent", "referer", "authorization"}

# Chỉ các body được parse ở tầng middleware mới đem đi phân tích.
# multipart (upload file), octet-stream, text... -> body coi như "{}" và không đọc vào bộ nhớ.
_PARSED_BODY_TYPES = ("application/json", "application/x-www-form-urlencoded")


def _query_to_json(request: Request) -> str:
    params: Dict[str, Union[str, List[str]]] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        params[key] = values[0] if len(values) == 1 else values
    return json.dumps(params, ensure_ascii=False)


def _is_parsed_body(content_type: str) -> bool:
    content_type = content_type.lower()
    return any(t in content_type for t in _PARSED_BODY_TYPES)


def _body_to_text(raw: bytes, content_type: str, max_chars: int) -> str:
    """
    Serialize body để so khớp:
    - JSON: parse rồi dump lại (gọn, ổn định)
    - form-urlencoded: chuyển thành dict rồi dump JSON
    - còn lại (multipart, file, text...): "{}", không phân tích nội dung upload
    Body quá dài bị cắt trước khi decode để không tốn bộ nhớ với payload bất thường.
    """
    if not raw or not _is_parsed_body(content_type):
        return "{}"
    raw = raw[:max_chars]
    text = raw.decode("utf-8", errors="ignore")

    if "application/json" in content_type.lower():
        try:
            return json.dumps(json.loads(text), ensure_ascii=False)
        except ValueError:
            return text
    if "application/x-www-form-urlencoded" in content_type.lower():
        form = {k: v[0] if len(v) == 1 else v for k, v in parse_qs(text, keep_blank_values=True).items()}
        return json.dumps(form, ensure_ascii=False)
    return "{}"


async def build_surface(request: Request, max_chars: int) -> RequestSurface:
    """Tách request thành các trường phân tích: url, user_agent, referer, body, query, headers."""
    url = request.url.path + ("?" + request.url.query if request.url.query else "")
    content_type = request.headers.get("content-type", "")
    raw_body = await request.body() if _is_parsed_body(content_type) else b""
    headers = "\n".join(
        f"{name}: {value}" for name, value in request.headers.items() if name.lower() not in _HEADERS_EXCLUDED
    )
    return RequestSurface(
        url=url,
        user_agent=request.headers.get("user-agent", ""),
        referer=request.headers.get("referer", ""),
        body=_body_to_text(raw_body, content_type, max_chars),
        query=_query_to_json(request),
        headers=headers,
    )


class ThreatGuard:
    """
    Middleware phát hiện tấn công, chạy trước mọi business logic:
    - Đánh giá request -> gắn ThreatAssessment vào request.state.threat_assessment
    - REJECT: trả 403 ngay, không vào handler
    - DELAY: chờ (không chặn event loop) rồi cho đi tiếp
    - CONTINUE: cho đi tiếp
    Lỗi nội bộ khi đánh giá -> log và cho request đi qua (fail-open).
    """

    def __init__(self, pipeline: ThreatPipeline, sleep=asyncio.sleep):
        self.pipeline = pipeline
        self.sleep = sleep

    async def __call__(self, request: Request, call_next):
        settings = self.pipeline.settings
        try:
            client_ip = get_client_ip(request, settings.trusted_proxies)
            setattr(request.state, CLIENT_IP_STATE_KEY, client_ip)

            surface = await build_surface(request, settings.max_analyzed_chars)
            # So khớp regex là CPU-bound -> offload sang thread (asyncio.to_thread) để không giữ event loop
            assessment = await asyncio.to_thread(
                self.pipeline.safe_assess, surface, client_ip, request.method, request.url.path
            )
            setattr(request.state, THREAT_STATE_KEY, assessment)

            decision = self.pipeline.decide(assessment)
        except Exception:
            security_logger.exception("Error in threat detection middleware path=%s", request.url.path)
            return await call_next(request)

        if decision.outcome == Outcome.REJECT:
            return JSONResponse(BLOCK_RESPONSE_BODY, status_code=403)

        if decision.outcome == Outcome.DELAY:
            await self.sleep(decision.delay_seconds)

        return await call_next(request)


class SessionGuard:
    """
    Middleware theo dõi hành vi phiên, chỉ chạy khi request có user đã xác thực.
    Chỉ ghi nhận và log bất thường, không tự huỷ phiên.
    """

    def __init__(self, pipeline: ThreatPipeline):
        self.pipeline = pipeline

    async def __call__(self, request: Request, call_next):
        try:
            user_id = resolve_user_id(request)
            if user_id:
                client_ip = getattr(request.state, CLIENT_IP_STATE_KEY, None) \
                    or get_client_ip(request, self.pipeline.settings.trusted_proxies)
                anomalies = self.pipeline.observe_session(user_id, client_ip, request.headers.get("user-agent", ""))
                setattr(request.state, ANOMALY_STATE_KEY, anomalies)
        except Exception:
            security_logger.exception("Error in session anomaly detection path=%s", request.url.path)

        return await call_next(request)
