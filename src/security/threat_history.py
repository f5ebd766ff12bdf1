import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional

from security.keyspace import k_threat
from utils.cache import TTLCache


@dataclass
class ThreatHistoryEntry:
    fingerprint: str
    hit_count: int
    first_seen: float
    last_seen: float
    max_score: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HistoryStats:
    tracked_fingerprints: int
    active_threats: int
    total_hits: int
    high_threat_hits: int
    top_threats: List[ThreatHistoryEntry]


class ThreatHistoryStore:
    """
    Gom điểm đe doạ theo fingerprint qua nhiều request (phục vụ metrics và tương quan chéo).
    - Mỗi request: tăng hit_count, cập nhật last_seen, nâng max_score nếu cao hơn.
    - Entry hết hạn sau TTL (mặc định 1 giờ) kể từ hoạt động cuối.
    - sweep() chạy định kỳ để chủ động xoá entry cũ, giữ bộ nhớ có giới hạn khi bị tấn công kéo dài.
    """

    def __init__(self, ttl_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries = TTLCache(default_ttl=ttl_seconds, clock=clock)

    def record(self, fingerprint: str, score: int, now: Optional[float] = None) -> ThreatHistoryEntry:
        now = self.clock() if now is None else now
        key = k_threat(fingerprint)
        with self._entries.lock:
            entry = self._entries.get(key)
            # Entry vừa bị dọn giữa lúc đọc và ghi -> coi như chưa có, tạo lại
            if entry is None:
                entry = ThreatHistoryEntry(fingerprint=fingerprint, hit_count=0,
                                           first_seen=now, last_seen=now, max_score=0)
            entry.hit_count += 1
            entry.last_seen = now
            entry.max_score = max(entry.max_score, int(score))
            self._entries.set(key, entry)
        return entry

    def get(self, fingerprint: str) -> Optional[ThreatHistoryEntry]:
        return self._entries.get(k_threat(fingerprint))

    def __len__(self) -> int:
        return len(self._entries)

    def sweep(self) -> int:
        """Xoá các entry có last_seen cũ hơn TTL. Trả về số entry đã xoá."""
        cutoff = self.clock() - self.ttl_seconds
        return self._entries.purge_expired(lambda _k, entry: entry.last_seen <= cutoff)

    def stats(self, active_threshold: int = 70, top_limit: int = 20) -> HistoryStats:
        entries = [entry for _, entry in self._entries.items()]
        active = [e for e in entries if e.max_score > active_threshold]
        active.sort(key=lambda e: (e.max_score, e.hit_count), reverse=True)
        return HistoryStats(
            tracked_fingerprints=len(entries),
            active_threats=len(active),
            total_hits=sum(e.hit_count for e in entries),
            high_threat_hits=sum(e.hit_count for e in active),
            top_threats=active[:top_limit],
        )
