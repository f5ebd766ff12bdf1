import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

"""
Cache trong bộ nhớ có TTL (Time To Live) cho từng key.
- Mỗi lần set() sẽ đặt lại hạn sống (TTL tính từ lần ghi cuối).
- get() tự coi key hết hạn là không tồn tại (lazy expiry).
- purge_expired() chủ động dọn các key hết hạn (gọi từ tác vụ sweep định kỳ).
Dữ liệu chỉ mang tính tham khảo: mất khi khởi động lại là chấp nhận được.
Mọi thao tác đều đi qua 1 lock để an toàn khi endpoint sync chạy trong threadpool.
"""

_MISSING = object()


class TTLCache:
    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.time):
        self.default_ttl = float(default_ttl)
        self.clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}   # key -> (value, expires_at)
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Lock dùng chung để caller có thể gom chuỗi get -> sửa -> set thành 1 thao tác."""
        return self._lock

    def get(self, key: str, default: Any = None) -> Any:
        """
        Lấy giá trị theo key.
        Key không có hoặc đã hết hạn -> trả default (và xoá luôn key hết hạn).
        """
        now = self.clock()
        with self._lock:
            item = self._data.get(key, _MISSING)
            if item is _MISSING:
                return default
            value, expires_at = item
            if expires_at <= now:
                del self._data[key]
                return default
            return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Lưu value với TTL giây (mặc định default_ttl)."""
        ttl = self.default_ttl if ttl is None else float(ttl)
        with self._lock:
            self._data[key] = (value, self.clock() + ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, _MISSING) is not _MISSING

    def ttl(self, key: str) -> float:
        """TTL còn lại (giây). -2 nếu không có key (giống quy ước của Redis)."""
        now = self.clock()
        with self._lock:
            item = self._data.get(key)
            if item is None or item[1] <= now:
                return -2
            return item[1] - now

    def items(self) -> List[Tuple[str, Any]]:
        """Ảnh chụp các cặp (key, value) còn hạn tại thời điểm gọi."""
        now = self.clock()
        with self._lock:
            return [(k, v) for k, (v, exp) in self._data.items() if exp > now]

    def purge_expired(self, predicate: Optional[Callable[[str, Any], bool]] = None) -> int:
        """
        Xoá các key đã hết hạn. Nếu có predicate thì xoá thêm các key mà predicate(key, value) trả True.
        Trả về số key đã xoá.
        """
        now = self.clock()
        with self._lock:
            doomed = [
                k for k, (v, exp) in self._data.items()
                if exp <= now or (predicate is not None and predicate(k, v))
            ]
            for k in doomed:
                del self._data[k]
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
        return count

    def __len__(self) -> int:
        return len(self.items())

    def __iter__(self) -> Iterator[str]:
        return iter([k for k, _ in self.items()])
