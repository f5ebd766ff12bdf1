from pydantic import BaseModel
from typing import List, Optional

"""
Định nghĩa lược đồ dữ liệu API quản trị bảo mật trả về cho người dùng
Chỉ trả số liệu tổng hợp và hồ sơ hành vi, không trả nội dung payload của request
"""

class ThreatEntryDisplay(BaseModel):
    """
    Lịch sử của 1 fingerprint trong cửa sổ 1 giờ
    - **fingerprint**: khoá tương quan (ip + ua + method + path)
    - **hit_count**: số request đã ghi nhận
    - **max_score**: điểm đe doạ cao nhất từng thấy
    """
    fingerprint: str
    hit_count: int
    first_seen: float
    last_seen: float
    max_score: int

class MetricsSnapshotDisplay(BaseModel):
    """
    Ảnh chụp số liệu của pipeline phát hiện tấn công
    - **rate_windows**: None khi bộ đếm chạy trên Redis (không quét keyspace)
    """
    timestamp: float
    profile: str
    tracked_fingerprints: int
    active_threats: int
    total_hits: int
    high_threat_hits: int
    rate_windows: Optional[int] = None
    session_profiles: int
    blocked_requests: int
    throttled_requests: int
    top_threats: List[ThreatEntryDisplay]

class AnomalyDisplay(BaseModel):
    type: str
    severity: str
    details: str
    detected_at: float

class SessionProfileDisplay(BaseModel):
    """
    Hồ sơ hành vi phiên của 1 user (hết hạn sau 30 phút không hoạt động)
    """
    user_id: str
    distinct_ips: List[str]
    distinct_user_agents: List[str]
    request_count: int
    first_seen: float
    last_activity: float
    anomalies: List[AnomalyDisplay]

class SweepResultDisplay(BaseModel):
    threat_history: int
    rate_windows: int
    session_profiles: int

