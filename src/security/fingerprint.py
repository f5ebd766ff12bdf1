import hashlib

# Độ dài fingerprint (số ký tự hex lấy từ SHA-256)
FINGERPRINT_LENGTH = 16


def build_fingerprint(client_ip: str, user_agent: str, method: str, path: str) -> str:
    """
    Tạo khoá tương quan cho "client này đang gọi request này":
    sha256("ip:ua:METHOD:path")[:16]. Path không bao gồm query string.
    Đây chỉ là heuristic: ai kiểm soát header của mình đều có thể giả mạo.
    """
    raw = f"{client_ip}:{user_agent}:{method.upper()}:{path}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:FINGERPRINT_LENGTH]
