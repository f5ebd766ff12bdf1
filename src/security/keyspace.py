"""
Tập trung hoá việc tạo TÊN KHOÁ cho các store (bộ nhớ trong hoặc Redis).
Mọi nơi khác chỉ GỌI HÀM ở đây -> nếu đổi format key, ta chỉ sửa file này.
"""

# ===== Rate/volume (bucket cố định 60 giây) =====

def minute_bucket(now_seconds: float) -> int:
    """Bucket phút hiện tại: floor(epoch_ms / 60000)."""
    return int(now_seconds * 1000) // 60_000

def k_rate(ip: str, bucket: int) -> str:
    """
    Đếm số request của 1 IP trong bucket phút.
    Ví dụ: rate:203.0.113.10:29012345
    """
    return f"rate:{ip}:{bucket}"

# ===== Threat history (theo fingerprint) =====

def k_threat(fingerprint: str) -> str:
    """Lịch sử điểm đe doạ của 1 fingerprint (TTL 1 giờ)."""
    return f"threat:{fingerprint}"

# ===== Session profile (theo user đã xác thực) =====

def k_session(user_id: str) -> str:
    """Hồ sơ hành vi phiên của 1 user (TTL 30 phút kể từ hoạt động cuối)."""
    return f"session:{user_id}"
