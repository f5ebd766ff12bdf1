from fastapi.security import OAuth2PasswordBearer
from typing import Any, Dict, Optional
from fastapi import Depends, HTTPException, status, Request
from jose import jwt # pip install python-jose
from jose.exceptions import JWTError
from dotenv import load_dotenv
import os

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Khóa bí mật dùng chung với dịch vụ cấp token (tạo bằng: openssl rand -hex 32)
# Middleware chỉ GIẢI MÃ token để biết request thuộc user nào, không cấp token cho người dùng cuối.
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

# Quyền được phép gọi các API quản trị bảo mật
HIGH_PRIVILEGE_LIST = {"Admin", "Boss"}

# Khoá trên request.state mà tầng xác thực phía trước có thể gán sẵn user id
USER_STATE_KEY = "user_id"

# Chỉ định nơi lấy token (chỉ dùng để hiển thị trên Swagger, token do dịch vụ đăng nhập cấp)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_optional_token(request: Request) -> Optional[str]:
    """
    Lấy token người dùng trong header "Authorization: Bearer <token>"
    """
    auth: str = request.headers.get("Authorization")
    if auth and auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None

def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Giải mã token dựa vào khóa bí mật và thuật toán đã sử dụng.
    Token sai/hết hạn -> JWTError
    """
    if not SECRET_KEY:
        raise JWTError("SECRET_KEY is not configured")
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

def resolve_user_id(request: Request) -> Optional[str]:
    """
    Xác định user của request cho bộ phát hiện bất thường phiên:
    1) request.state.user_id nếu tầng xác thực phía trước đã gán
    2) trường "ID" (hoặc "sub") trong Bearer token hợp lệ
    Không có hoặc token không hợp lệ -> None (request ẩn danh, bỏ qua).
    """
    user_id = getattr(request.state, USER_STATE_KEY, None)
    if user_id:
        return str(user_id)

    token = get_optional_token(request)
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except JWTError:
        return None

    user_id = payload.get("ID") or payload.get("sub")
    return str(user_id) if user_id else None


def required_token_user(token: str = Depends(oauth2_scheme)) -> Dict[str, Any]:
    """
    Lấy thông tin người dùng hiện tại dựa vào `token`, token thiếu/sai -> 401
    """
    credentials_exception = HTTPException(
        status_code= status.HTTP_401_UNAUTHORIZED,
        detail= {
            "message": "Không thể xác thực token người dùng"
        },
        headers= {"WWW-Authenticate": "Bearer"}
    )
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    user_id = payload.get("ID")
    email = payload.get("Email")
    # Kiểm tra các thông tin có tồn tại trong payload không
    if not user_id or not email:
        raise credentials_exception

    return {
        "ID": user_id,
        "Name": payload.get("Name"),
        "Email": email,
        "Avatar": payload.get("Avatar"),
        "Privilege": payload.get("Privilege"),
    }

def require_security_admin(user: Dict[str, Any] = Depends(required_token_user)) -> Dict[str, Any]:
    """
    Chỉ Admin/Boss mới được xem số liệu bảo mật.
    """
    if user.get("Privilege") not in HIGH_PRIVILEGE_LIST:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": "Bạn không có quyền thực hiện thao tác này",
            }
        )
    return user
