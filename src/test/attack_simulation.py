# -*- coding: utf-8 -*-

"""
Script giả lập tấn công vào server đang chạy (không phải test pytest):
1) Gửi payload SQLi/XSS -> kỳ vọng 403 {"code": "SECURITY_THREAT_DETECTED"}.
2) Gửi request với User-Agent của công cụ quét (sqlmap) -> kỳ vọng đi qua (chỉ monitor).
3) Bắn dồn N request sạch trong 1 phút -> từ request thứ RATE_THRESHOLD+1 bị trì hoãn ~1 giây.
4) Đọc /security/admin/metrics bằng token Admin để xem số liệu.

Chạy: python src/test/attack_simulation.py  (server: fastapi dev src/main.py)
Token Admin: đặt biến môi trường ADMIN_TOKEN (JWT ký bằng cùng SECRET_KEY với server).
"""
import os
import time
import requests                    # Gửi HTTP đồng bộ (pip install requests)
from typing import Dict, List, Optional


def fire_payloads(base_url: str, path: str) -> List[int]:
    """Gửi các payload tấn công phổ biến, trả danh sách status code."""
    payloads = [
        "1' OR '1'='1",
        "<script>alert(1)</script>",
        "union select username, password from users",
        "../../etc/passwd",
    ]
    codes = []
    print(f"[1] Gửi {len(payloads)} payload tấn công đến {base_url}{path}")
    for q in payloads:
        r = requests.get(f"{base_url}{path}", params={"q": q}, timeout=5)
        codes.append(r.status_code)
        body = r.json() if r.headers.get("content-type", "").startswith("application/json") else r.text
        print(f"  - {q!r}: {r.status_code} {body}")
    return codes


def fire_scanner_user_agent(base_url: str, path: str) -> int:
    """User-Agent của công cụ quét chỉ bị ghi nhận (monitor), không bị chặn."""
    r = requests.get(f"{base_url}{path}", headers={"User-Agent": "sqlmap/1.0"}, timeout=5)
    print(f"[2] sqlmap UA -> {r.status_code}")
    return r.status_code


def fire_burst(base_url: str, path: str, n: int) -> List[float]:
    """Bắn dồn n request sạch, trả thời gian phản hồi (giây) của từng request."""
    print(f"[3] Bắn dồn {n} request sạch ...")
    durations = []
    for i in range(n):
        t0 = time.perf_counter()
        requests.get(f"{base_url}{path}", timeout=10)
        durations.append(time.perf_counter() - t0)
    slow = [i + 1 for i, d in enumerate(durations) if d >= 0.9]
    print(f"  -> {len(slow)} request bị trì hoãn, request chậm đầu tiên: {slow[0] if slow else None}")
    return durations


def read_metrics(base_url: str, token: Optional[str]) -> Optional[Dict]:
    if not token:
        print("[4] Bỏ qua metrics: chưa đặt ADMIN_TOKEN")
        return None
    r = requests.get(f"{base_url}/security/admin/metrics",
                     headers={"Authorization": f"Bearer {token}"}, timeout=10)
    print(f"[4] metrics {r.status_code}: {r.json()}")
    return r.json() if r.ok else None


def main():
    base = os.getenv("BASE_URL", "http://127.0.0.1:8000")
    path = "/healthz"
    burst = int(os.getenv("BURST", 110))

    fire_payloads(base, path)
    fire_scanner_user_agent(base, path)
    fire_burst(base, path, burst)
    read_metrics(base, os.getenv("ADMIN_TOKEN"))


if __name__ == "__main__":
    main()
