import os                 # Đọc biến môi trường để lấy REDIS_URL
from typing import Optional
import redis              # Thư viện redis-py (pip install redis)
"""
Redis chỉ được dùng khi RATE_TRACKER_BACKEND=redis (đếm request theo phút dùng chung
giữa nhiều worker/instance). Mặc định pipeline chạy hoàn toàn trong bộ nhớ.

Chạy Redis bằng Docker: `docker run -p 6379:6379 -it redis:latest`
Xem thêm tài liệu: https://pypi.org/project/redis/
redis-py mặc định trả về bytes (decode_responses=False), nhanh hơn và tự decode khi cần.
"""

# # Hàm trả về đối tượng Redis dùng connection pool (tái sử dụng TCP)
def get_redis(url: Optional[str] = None) -> redis.Redis:
    """
    Tạo client Redis từ url hoặc REDIS_URL (ví dụ: redis://redis:6379/0).
    Timeout ngắn vì bộ đếm chạy trên đường đi của mọi request: Redis chậm thì
    thà bỏ qua (fail-open) còn hơn giữ request lại.
    """
    url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")

    pool = redis.ConnectionPool.from_url(                     # # Tạo pool kết nối từ URL
        url,
        socket_keepalive=True,                                # # Giữ kết nối lâu dài (keepalive)
        socket_timeout=0.5,                                   # # Timeout thao tác (giây)
        socket_connect_timeout=0.5,                           # # Timeout kết nối (giây)
        max_connections=200,                                  # # Giới hạn số kết nối đồng thời từ app
        health_check_interval=30,                             # # Ping định kỳ phát hiện kết nối chết
        decode_responses=False                                # # Trả về bytes (nhanh, ít decode)
    )
    return redis.Redis(connection_pool=pool)                  # # Tạo client trỏ vào pool và trả về
