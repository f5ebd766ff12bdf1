import logging
import os
from pathlib import Path
from dotenv import load_dotenv

from log.security_log import DailyLogFile, register_daily_file

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ file log request
LOG_DIRECTORY = os.getenv("LOG_DIRECTORY", "log/api_log")

# Tạo thư mục nếu chưa có
Path(LOG_DIRECTORY).mkdir(parents=True, exist_ok=True)

# Các trường sẽ có trong log request
REQUEST_LOG_FIELDS = (
    "ip", "method", "api_name", "status", "duration_ms", "correlation_id",
    "user_agent", "user_id", "threat_score", "threat_action", "fingerprint", "params",
)


class CustomFilter(logging.Filter):
    def filter(self, record):
        # Nếu trường nào không được truyền qua extra thì mặc định là "None"
        for name in REQUEST_LOG_FIELDS:
            setattr(record, name, getattr(record, name, "None"))
        return True


# Formatter: Tạo log theo các trường thông tin của request + ngữ cảnh bảo mật
_formatter = logging.Formatter(
    "%(asctime)s - %(ip)s - %(method)s %(api_name)s - "
    "status: %(status)s - duration: %(duration_ms)s ms - cid: %(correlation_id)s - ua: %(user_agent)s - "
    "user: %(user_id)s - threat: %(threat_score)s/%(threat_action)s - fp: %(fingerprint)s - params: %(params)s",
    datefmt="%d-%m-%Y %H:%M:%S",  # Định dạng thời gian (ngày-tháng-năm giờ:phút:giây)
)

# Logger request
request_logger = logging.getLogger("request_logger")
request_logger.setLevel(logging.INFO)
request_logger.propagate = False  # Không đẩy lên root

register_daily_file(DailyLogFile(request_logger, LOG_DIRECTORY, "api_log.log", _formatter, CustomFilter()))
