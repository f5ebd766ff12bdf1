import logging
import shutil
import threading
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ file log bảo mật
SECURITY_LOG_DIRECTORY = os.getenv("SECURITY_LOG_DIRECTORY", "log/security_log")
# Số ngày giữ lại thư mục log
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", 30))

Path(SECURITY_LOG_DIRECTORY).mkdir(parents=True, exist_ok=True)


class DetailsFilter(logging.Filter):
    def filter(self, record):
        # Trường `details` là chuỗi JSON truyền qua extra, nếu không có thì mặc định là "-"
        record.details = getattr(record, "details", "-")
        return True


# Formatter: message ngắn gọn + chi tiết có cấu trúc ở cuối dòng
_formatter = logging.Formatter(
    '%(asctime)s %(levelname)s:\t %(filename)s - Line: %(lineno)d message: %(message)s - details: %(details)s',
    datefmt='%d/%m/%Y %H:%M:%S %p'
)


def _today_str() -> str:
    # Định dạng thư mục theo ngày: DD-MM-YY
    return datetime.now().strftime("%d-%m-%y")


def _remove_old_logs(logs_root: str, max_days: int = LOG_RETENTION_DAYS) -> None:
    """
    Xoá các thư mục ngày cũ hơn max_days ngày.
    Bỏ qua thư mục không đúng định dạng DD-MM-YY.
    """
    if not os.path.exists(logs_root):
        return

    now = datetime.now()
    for entry in os.listdir(logs_root):
        entry_path = os.path.join(logs_root, entry)
        if not os.path.isdir(entry_path):
            continue
        try:
            folder_date = datetime.strptime(entry, "%d-%m-%y")
        except ValueError:
            # Không phải thư mục ngày -> bỏ qua (vd: 'fallback')
            continue

        if (now - folder_date).days > max_days:
            shutil.rmtree(entry_path, ignore_errors=True)


class DailyLogFile:
    """
    Gắn 1 FileHandler vào logger, file nằm trong thư mục theo ngày: <root>/<DD-MM-YY>/<file_name>.
    Khi sang ngày mới, rotate() tháo handler cũ và tạo handler mới.
    """

    def __init__(self, target: logging.Logger, root: str, file_name: str,
                 formatter: logging.Formatter, log_filter: logging.Filter, level: int = logging.NOTSET):
        self.target = target
        self.root = root
        self.file_name = file_name
        self.formatter = formatter
        self.log_filter = log_filter
        self.level = level
        self.day = _today_str()
        self.handler = self._make_handler(self.day)
        target.addHandler(self.handler)

    def _make_handler(self, day: str) -> logging.FileHandler:
        log_dir = os.path.join(self.root, day)
        os.makedirs(log_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(log_dir, self.file_name), encoding="utf-8")
        handler.setLevel(self.level)
        handler.addFilter(self.log_filter)
        handler.setFormatter(self.formatter)
        return handler

    def rotate(self, day_now: str) -> bool:
        """Trả True nếu đã đổi sang file của ngày mới."""
        if day_now == self.day:
            return False

        self.target.removeHandler(self.handler)
        self.handler.close()

        self.day = day_now
        self.handler = self._make_handler(day_now)
        self.target.addHandler(self.handler)
        return True


# Danh sách file log cần xoay theo ngày (security + request log đăng ký vào đây)
_daily_files: List[DailyLogFile] = []
_daily_files_lock = threading.Lock()


def register_daily_file(daily_file: DailyLogFile) -> DailyLogFile:
    with _daily_files_lock:
        _daily_files.append(daily_file)
    return daily_file


def rotate_if_new_day(day_now: Optional[str] = None) -> int:
    """
    Kiểm tra nếu sang ngày mới thì xoay toàn bộ file log đã đăng ký và dọn thư mục cũ.
    Trả về số handler đã xoay.
    """
    day_now = day_now or _today_str()
    rotated = 0
    with _daily_files_lock:
        roots = set()
        for daily_file in _daily_files:
            if daily_file.rotate(day_now):
                rotated += 1
                roots.add(daily_file.root)

    for root in roots:
        _remove_old_logs(root)
    return rotated


def rotation_loop(stop_event: threading.Event, interval_seconds: float = 3600) -> None:
    """
    Thread nền: mỗi 1 tiếng kiểm tra xem có sang ngày mới chưa.
    Dừng khi stop_event được set (gọi ở lifespan shutdown).
    """
    while not stop_event.is_set():
        try:
            rotate_if_new_day()
        except OSError as ex:
            # Không để thread chết vì lỗi IO (ổ đầy, thiếu quyền...)
            security_logger.warning("Log rotation failed: %s", ex)
        stop_event.wait(interval_seconds)


# =========================
# Logger bảo mật
# =========================

security_logger = logging.getLogger("security_logger")
security_logger.setLevel(logging.INFO)
security_logger.propagate = False  # Không đẩy lên root

_details_filter = DetailsFilter()

# security_log.log: mọi sự kiện; security_error.log: chỉ ERROR trở lên (request bị chặn, lỗi pipeline...)
register_daily_file(DailyLogFile(security_logger, SECURITY_LOG_DIRECTORY, "security_log.log",
                                 _formatter, _details_filter))
register_daily_file(DailyLogFile(security_logger, SECURITY_LOG_DIRECTORY, "security_error.log",
                                 _formatter, _details_filter, level=logging.ERROR))

# Console handler ở mức WARNING để thấy cảnh báo ngay trong stdout
_console = logging.StreamHandler()
_console.setLevel(logging.WARNING)
_console.setFormatter(_formatter)
_console.addFilter(_details_filter)
security_logger.addHandler(_console)
