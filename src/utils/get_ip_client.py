from fastapi import Request
from ipaddress import ip_address
from typing import Iterable, Optional, Tuple

def norm_ip(ip_raw: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Chuẩn hoá chuỗi IP về dạng hợp lệ.
    Trả (True, ip_chuẩn) nếu parse được, (False, ip_raw) nếu không.
    """
    # Kiểm tra giá trị truyền vào tồn tại hay không và có phải là chuỗi string hay không
    if not ip_raw or not isinstance(ip_raw, str):
        return False, None

    try:
        return True, str(ip_address(ip_raw.strip()))  # Parse IPv4/IPv6; sai sẽ ném ValueError
    except ValueError:
        # Nếu không parse được, trả nguyên để không crash
        return False, ip_raw

def get_client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Nhận 1 request từ FastAPI và trả về địa chỉ IP của client
    - Chỉ tin X-Forwarded-For khi kết nối trực tiếp đến từ 1 proxy tin cậy
      (trusted_proxies chứa IP của proxy, hoặc "*" để tin mọi nguồn). Khi đó lấy phần tử đầu (client gốc).
    - Ngược lại: request.client.host
    Kết quả chỉ dùng làm khoá tương quan, không phải ranh giới bảo mật.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = set(trusted_proxies)

    xff = request.headers.get("x-forwarded-for")
    if xff and ("*" in trusted or peer in trusted):
        # format: "client, proxy1, proxy2"
        candidate = xff.split(",")[0].strip()
        if candidate:
            is_ip, ip = norm_ip(candidate)
            return ip if is_ip else candidate

    is_ip, ip = norm_ip(peer)
    return ip if is_ip else peer
