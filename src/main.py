from fastapi import FastAPI # pip install "fastapi[standard]"
import uvicorn
import threading
import os
from contextlib import asynccontextmanager
from typing import Optional
from fastapi.middleware.cors import CORSMiddleware
from api import health_check, security_admin
from log.security_log import rotation_loop, security_logger
from middlerware.logger import SecurityRequestLogger
from middlerware.threat_guard import SessionGuard, ThreatGuard
from security.config import SecuritySettings, load_settings
from security.maintenance import SecurityMaintenance
from security.pipeline import ThreatPipeline
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


PORT_HOST = os.getenv("PORT_HOST", "8000")

# Ép kiểu để port là số nguyên
PORT = int(PORT_HOST)

"""
Cho phép các trang web, app trên cùng 1 máy tính có thể truy cập đến api này (phục vụ test)
"""
origins = [
    "http://localhost:3000",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Khởi động: thread xoay log theo ngày + tác vụ nền sweep/metrics của pipeline
    stop_rotation = threading.Event()
    rotation_thread = threading.Thread(target=rotation_loop, args=(stop_rotation,),
                                       name="DailySecurityLogRotationThread", daemon=True)
    rotation_thread.start()

    maintenance: SecurityMaintenance = app.state.security_maintenance
    maintenance.start()
    security_logger.info("Threat detection pipeline started (profile=%s)", app.state.threat_pipeline.settings.profile.name)
    yield
    # Các câu lệnh sau yield được thực hiện khi tắt server
    await maintenance.stop()
    stop_rotation.set()
    security_logger.info("Threat detection pipeline stopped")


def create_app(settings: Optional[SecuritySettings] = None, pipeline: Optional[ThreatPipeline] = None) -> FastAPI:
    """
    Tạo app FastAPI với pipeline phát hiện tấn công riêng cho instance này.
    Thứ tự middleware (ngoài -> trong): request logger -> threat guard -> session guard -> handler.
    """
    settings = settings or (pipeline.settings if pipeline is not None else load_settings())
    pipeline = pipeline or ThreatPipeline.from_settings(settings)

    app = FastAPI(
        docs_url="/myapi",  # Đặt đường dẫn Swagger UI thành "/myapi"
        redoc_url=None,  # Tắt Redoc UI
        lifespan=lifespan,
    )
    app.state.threat_pipeline = pipeline
    app.state.security_maintenance = SecurityMaintenance(pipeline)

    # Middleware thêm SAU sẽ nằm NGOÀI cùng
    app.middleware("http")(SessionGuard(pipeline))
    app.middleware("http")(ThreatGuard(pipeline))
    app.middleware("http")(SecurityRequestLogger(pipeline.settings))

    app.include_router(health_check.router)
    app.include_router(security_admin.router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins = origins,
        allow_credentials = True,
        allow_methods = ["*"],
        allow_headers = ["*"]
    )
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("__main__:app", host="0.0.0.0", port=PORT)

    # Hoặc gõ trực tiếp lệnh `fastapi dev src/main.py` để vào chế độ developer
