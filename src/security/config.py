import os
from dataclasses import dataclass, field  # # Dùng dataclass cho nhóm cấu hình gọn gàng
from typing import Optional, Tuple
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


@dataclass(frozen=True)
class TTLConfig:
    """
    Gom TTL (Time To Live) của các store vào 1 struct:
    - rate_window: Thời gian (giây) sống của 1 bucket đếm request theo phút
    - threat_history: Thời gian (giây) giữ lịch sử của 1 fingerprint kể từ lần cuối hoạt động
    - session_profile: Thời gian (giây) giữ hồ sơ hành vi của 1 user kể từ request cuối
    """
    rate_window: int = 60
    threat_history: int = 60 * 60
    session_profile: int = 30 * 60


@dataclass(frozen=True)
class SensitivityProfile:
    """
    Mức độ nhạy của bộ phát hiện, thay cho việc rẽ nhánh theo chuỗi môi trường.
    - strict: dùng cho production, chặn sớm
    - relaxed: dùng cho development, tắt các pattern lệnh quá chung chung
      và nâng điểm nhóm command để traffic test ít khi vượt ngưỡng chặn nhầm
    """
    name: str
    blocking_threshold: int
    command_score: int
    strict_command_patterns: bool
    metrics_interval_seconds: int
    log_clean_requests: bool


PROFILES = {
    "strict": SensitivityProfile(
        name="strict",
        blocking_threshold=100,
        command_score=120,
        strict_command_patterns=True,
        metrics_interval_seconds=30 * 60,
        log_clean_requests=False,
    ),
    "relaxed": SensitivityProfile(
        name="relaxed",
        blocking_threshold=500,
        command_score=200,
        strict_command_patterns=False,
        metrics_interval_seconds=5 * 60,
        log_clean_requests=True,
    ),
}


@dataclass(frozen=True)
class AnomalyThresholds:
    """
    Ngưỡng phát hiện bất thường của phiên đăng nhập:
    - max_ips: số IP khác nhau tối đa trước khi báo `multiple_ips`
    - max_user_agents: số UA khác nhau tối đa trước khi báo `multiple_user_agents`
    - max_requests_per_second: tần suất trung bình tối đa trước khi báo `high_frequency`
    """
    max_ips: int = 3
    max_user_agents: int = 2
    max_requests_per_second: float = 10.0


@dataclass(frozen=True)
class SecuritySettings:
    """Toàn bộ cấu hình của pipeline phát hiện tấn công."""
    profile: SensitivityProfile = PROFILES["relaxed"]
    ttl: TTLConfig = field(default_factory=TTLConfig)
    anomaly: AnomalyThresholds = field(default_factory=AnomalyThresholds)
    rate_threshold: int = 100            # Số request/phút/IP trước khi cộng điểm volume
    rate_score: int = 50                 # Điểm cộng thêm khi vượt ngưỡng volume
    notable_score: int = 50              # Vượt ngưỡng này thì ghi log cảnh báo
    active_threat_score: int = 70        # Fingerprint có max_score vượt ngưỡng này là "active threat"
    throttle_delay_seconds: float = 1.0  # Thời gian trì hoãn khi throttle
    excerpt_length: int = 100            # Độ dài đoạn trích lưu trong mỗi detection
    max_analyzed_chars: int = 64 * 1024  # Giới hạn độ dài chuỗi đem đi so khớp regex
    rate_backend: str = "memory"         # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    trusted_proxies: Tuple[str, ...] = ()
    sweep_interval_seconds: int = 60 * 60


def resolve_profile(name: Optional[str], app_env: Optional[str] = None) -> SensitivityProfile:
    """
    Chọn profile theo tên. Nếu không khai báo thì suy ra từ APP_ENV:
    production -> strict, còn lại -> relaxed.
    """
    if name:
        key = name.strip().lower()
        if key not in PROFILES:
            raise ValueError(f"Unknown sensitivity profile: {name!r} (expected one of {sorted(PROFILES)})")
        return PROFILES[key]

    env = (app_env or "development").strip().lower()
    return PROFILES["strict"] if env == "production" else PROFILES["relaxed"]


def _split_csv(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def load_settings() -> SecuritySettings:
    """
    Đọc cấu hình từ biến môi trường (.env được nạp sẵn ở đầu module).
    """
    backend = os.getenv("RATE_TRACKER_BACKEND", "memory").strip().lower()
    if backend not in ("memory", "redis"):
        raise ValueError(f"RATE_TRACKER_BACKEND phải là 'memory' hoặc 'redis', nhận được: {backend!r}")

    return SecuritySettings(
        profile=resolve_profile(os.getenv("THREAT_SENSITIVITY"), os.getenv("APP_ENV")),
        anomaly=AnomalyThresholds(
            max_ips=int(os.getenv("SESSION_MAX_IPS", 3)),
            max_user_agents=int(os.getenv("SESSION_MAX_USER_AGENTS", 2)),
            max_requests_per_second=float(os.getenv("SESSION_MAX_RPS", 10)),
        ),
        rate_threshold=int(os.getenv("RATE_THRESHOLD", 100)),
        notable_score=int(os.getenv("NOTABLE_SCORE", 50)),
        active_threat_score=int(os.getenv("ACTIVE_THREAT_SCORE", 70)),
        throttle_delay_seconds=float(os.getenv("THROTTLE_DELAY_SECONDS", 1.0)),
        excerpt_length=int(os.getenv("EXCERPT_LENGTH", 100)),
        max_analyzed_chars=int(os.getenv("MAX_ANALYZED_CHARS", 64 * 1024)),
        rate_backend=backend,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        trusted_proxies=_split_csv(os.getenv("TRUSTED_PROXIES")),
        sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", 60 * 60)),
    )
