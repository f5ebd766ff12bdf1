import json, time, uuid
from typing import Dict

from fastapi import Request

from auth.oauth2 import resolve_user_id
from log.logging_config import request_logger
from middlerware.threat_guard import CLIENT_IP_STATE_KEY, THREAT_STATE_KEY
from security.config import SecuritySettings
from utils.get_ip_client import get_client_ip

# Các đường dẫn ít giá trị (giảm ồn)
EXCLUDED_PATHS = {"/redoc", "/docs", "/openapi.json", "/healthz"}

# Khóa nhạy cảm cần che khi log query params
SENSITIVE_KEYS = {"password", "token", "authorization", "apikey", "secret", "cookie"}


def sanitize_dict(d: Dict) -> Dict:
    """
    Ẩn các trường nhạy cảm trong dict (vd: query params).
    """
    return {k: "***" if k.lower() in SENSITIVE_KEYS else v for k, v in d.items()}


class SecurityRequestLogger:
    """
    Middleware ghi log cho MỖI request kèm ngữ cảnh bảo mật:
    - ip, method, path, status, thời gian xử lý, correlation-id, user-agent
    - user id (nếu có), điểm đe doạ, hành động, fingerprint (đọc từ request.state do ThreatGuard gắn)
    Profile strict (production) chỉ ghi request có phát hiện hoặc lỗi (status >= 400).
    Header Authorization/Cookie không bao giờ được ghi.
    """

    def __init__(self, settings: SecuritySettings):
        self.settings = settings

    def _should_log(self, path: str, status: int, assessment) -> bool:
        if path in EXCLUDED_PATHS:
            return False
        if self.settings.profile.log_clean_requests:
            return True
        has_threats = assessment is not None and assessment.total_score > 0
        return has_threats or status >= 400

    def _extra(self, request: Request, status: int, start: float, cid: str) -> Dict:
        assessment = getattr(request.state, THREAT_STATE_KEY, None)
        client_ip = getattr(request.state, CLIENT_IP_STATE_KEY, None) \
            or get_client_ip(request, self.settings.trusted_proxies)
        return {
            "ip": client_ip,
            "method": request.method,
            "api_name": request.url.path,
            "status": status,
            "duration_ms": f"{(time.perf_counter() - start) * 1000:.2f}",
            "correlation_id": cid,
            "user_agent": request.headers.get("user-agent", "-"),
            "user_id": resolve_user_id(request) or "-",
            "threat_score": assessment.total_score if assessment is not None else "-",
            "threat_action": assessment.recommended_action.value if assessment is not None else "-",
            "fingerprint": (assessment.fingerprint or "-") if assessment is not None else "-",
            "params": json.dumps(sanitize_dict(dict(request.query_params)), ensure_ascii=False),
        }

    async def __call__(self, request: Request, call_next):
        start = time.perf_counter()
        # Correlation-ID: lấy từ header nếu có, không thì tự sinh
        cid = request.headers.get("x-request-id") or str(uuid.uuid4())

        # Gọi handler thật, bọc try/except để đảm bảo LUÔN có log khi lỗi xảy ra sớm
        try:
            response = await call_next(request)
        except Exception:
            request_logger.exception("", extra=self._extra(request, 500, start, cid))
            # Re-raise để FastAPI vẫn xử lý error pipeline (handlers/exception handlers)
            raise

        assessment = getattr(request.state, THREAT_STATE_KEY, None)
        if self._should_log(request.url.path, response.status_code, assessment):
            request_logger.info("", extra=self._extra(request, response.status_code, start, cid))

        return response
