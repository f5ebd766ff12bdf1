import os
import tempfile
from datetime import datetime, timedelta, timezone

# Biến môi trường phải có TRƯỚC khi import các module của app (log, oauth2 đọc env lúc import)
_LOG_ROOT = tempfile.mkdtemp(prefix="threat_guard_logs_")
os.environ["SECRET_KEY"] = "test-secret-key-for-pytest-only"
os.environ["ALGORITHM"] = "HS256"
os.environ["SECURITY_LOG_DIRECTORY"] = os.path.join(_LOG_ROOT, "security_log")
os.environ["LOG_DIRECTORY"] = os.path.join(_LOG_ROOT, "api_log")
os.environ["RATE_TRACKER_BACKEND"] = "memory"

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt

from main import create_app
from middlerware.threat_guard import ANOMALY_STATE_KEY, THREAT_STATE_KEY
from security.config import PROFILES, SecuritySettings
from security.pipeline import ThreatPipeline


class FakeClock:
    """
    Đồng hồ giả cho các store: thời gian chỉ đổi khi gọi advance().
    Mốc bắt đầu nằm đúng đầu 1 bucket phút.
    """

    def __init__(self, start: float = 1_699_999_980.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strict_settings():
    return SecuritySettings(profile=PROFILES["strict"])


@pytest.fixture
def relaxed_settings():
    return SecuritySettings(profile=PROFILES["relaxed"])


@pytest.fixture
def pipeline(strict_settings, clock):
    return ThreatPipeline(strict_settings, clock=clock)


def build_test_app(pipeline: ThreatPipeline):
    """
    App đầy đủ middleware + 1 route nghiệp vụ giả để đọc lại request.state.
    """
    app = create_app(pipeline=pipeline)

    def _state(request: Request):
        assessment = getattr(request.state, THREAT_STATE_KEY, None)
        anomalies = getattr(request.state, ANOMALY_STATE_KEY, [])
        return {
            "threat_score": assessment.total_score if assessment is not None else None,
            "action": assessment.recommended_action.value if assessment is not None else None,
            "fingerprint": assessment.fingerprint if assessment is not None else None,
            "anomalies": [a.type for a in anomalies],
        }

    @app.get("/api/items")
    def list_items(request: Request):
        return _state(request)

    @app.post("/api/items")
    async def create_item(request: Request):
        payload = await request.json()
        return {"received": payload, **_state(request)}

    @app.post("/api/upload")
    async def upload_file(request: Request):
        form = await request.form()
        content = await form["file"].read()
        return {"filename": form["file"].filename, "size": len(content), **_state(request)}

    return app


@pytest.fixture
def client(pipeline):
    return TestClient(build_test_app(pipeline))


def make_token(data: dict, expires_delta: timedelta = timedelta(minutes=15)) -> str:
    """
    Ký JWT giống dịch vụ đăng nhập (service này chỉ giải mã token, không tự cấp).
    """
    to_encode = {**data, "exp": datetime.now(timezone.utc) + expires_delta}
    return jwt.encode(to_encode, os.environ["SECRET_KEY"], algorithm=os.environ["ALGORITHM"])


def bearer(user_id: str = "u-1", privilege: str = "User", email: str = "user@example.com") -> dict:
    token = make_token({"ID": user_id, "Name": "Test", "Email": email, "Privilege": privilege})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    return bearer("admin-1", privilege="Admin", email="admin@example.com")
