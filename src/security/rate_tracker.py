import time
from typing import Callable, Optional

from log.security_log import security_logger
from security.keyspace import k_rate, minute_bucket
from utils.cache import TTLCache

"""
Rate/Volume Tracker: đếm số request của mỗi IP trong bucket 60 giây cố định.
- Khoá bucket: ip + floor(now_ms / 60000). Key tự hết hạn 60 giây sau lần ghi cuối.
- Đây KHÔNG phải sliding window thật: client có thể dồn request quanh ranh giới 2 bucket
  và vượt tốc độ danh nghĩa trong thời gian ngắn mà không bị đếm. Chấp nhận xấp xỉ này.
- increment(ip) trả về số đếm SAU khi tăng (request thứ N trong bucket -> N).

Có 2 backend:
- MemoryRateTracker: dict có TTL trong tiến trình (mặc định).
- RedisRateTracker: INCR + EXPIRE trên Redis, dùng chung giữa nhiều worker.
  Redis lỗi -> fail-open (trả 0) và bỏ qua Redis trong COOLDOWN giây.
"""


class MemoryRateTracker:
    backend = "memory"

    def __init__(self, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self.clock = clock
        self._counters = TTLCache(default_ttl=window_seconds, clock=clock)

    def increment(self, client_ip: str) -> int:
        key = k_rate(client_ip, minute_bucket(self.clock()))
        with self._counters.lock:
            count = int(self._counters.get(key, 0)) + 1
            self._counters.set(key, count)
        return count

    def current(self, client_ip: str) -> int:
        return int(self._counters.get(k_rate(client_ip, minute_bucket(self.clock())), 0))

    def window_count(self) -> Optional[int]:
        """Số bucket đang còn hạn (phục vụ metrics)."""
        return len(self._counters)

    def purge_expired(self) -> int:
        return self._counters.purge_expired()


# Redis down -> skip kiểm tra trong COOL_DOWN giây
REDIS_RL_COOLDOWN_SECONDS = 5.0

# Throttle log: tối đa 1 log/giây
_LOG_EVERY_SECONDS = 1.0


class RedisRateTracker:
    backend = "redis"

    def __init__(self, redis_client, window_seconds: int = 60, clock: Callable[[], float] = time.time,
                 cooldown_seconds: float = REDIS_RL_COOLDOWN_SECONDS):
        self.redis = redis_client
        self.window_seconds = window_seconds
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds
        self._skip_until_ts: float = 0.0   # Timestamp đến khi nào thì sẽ skip Redis (circuit breaker)
        self._last_log_ts: float = 0.0

    def _should_skip_redis(self) -> bool:
        """Trả True nếu đang trong thời gian skip Redis do lỗi trước đó."""
        return self.clock() < self._skip_until_ts

    def _mark_redis_down(self, ex: Exception, op: str) -> None:
        """Đánh dấu Redis down, skip trong cooldown_seconds giây và log có throttle để tránh spam."""
        now = self.clock()
        self._skip_until_ts = now + self.cooldown_seconds
        if now - self._last_log_ts >= _LOG_EVERY_SECONDS:
            self._last_log_ts = now
            security_logger.warning("RateTracker Redis error at %s (skip %.1fs): %s", op, self.cooldown_seconds, ex)

    def increment(self, client_ip: str) -> int:
        """
        - Redis OK: INCR + EXPIRE trong 1 transaction, trả số đếm thật
        - Redis down: fail-open -> 0 (không cộng điểm volume)
        """
        if self._should_skip_redis():
            return 0

        key = k_rate(client_ip, minute_bucket(self.clock()))
        try:
            with self.redis.pipeline(transaction=True) as p:
                p.incr(key)
                p.expire(key, self.window_seconds)   # Gia hạn TTL sau mỗi lần ghi
                count, _ = p.execute()
            return int(count)
        except Exception as ex:
            self._mark_redis_down(ex, "INCR")
            return 0

    def current(self, client_ip: str) -> int:
        if self._should_skip_redis():
            return 0
        try:
            raw = self.redis.get(k_rate(client_ip, minute_bucket(self.clock())))
        except Exception as ex:
            self._mark_redis_down(ex, "GET")
            return 0
        return int(raw) if raw else 0

    def window_count(self) -> Optional[int]:
        # Redis tự dọn key theo TTL; không quét keyspace chỉ để đếm
        return None

    def purge_expired(self) -> int:
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except Exception as ex:
            self._mark_redis_down(ex, "PING")
            return False
