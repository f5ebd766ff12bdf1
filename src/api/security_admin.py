from typing import Any, Dict
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from auth.oauth2 import require_security_admin
from schemas.schemas import MetricsSnapshotDisplay, SessionProfileDisplay, SweepResultDisplay, ThreatEntryDisplay
from controllers.security_admin_controller import Security_Admin_Controller
from security.pipeline import ThreatPipeline


router = APIRouter(
    prefix="/security/admin",
    tags=["Security Admin"]
)


def get_pipeline(request: Request) -> ThreatPipeline:
    """Pipeline được gắn vào app.state khi tạo app (xem main.create_app)."""
    return request.app.state.threat_pipeline


@router.get("/metrics", summary="Ảnh chụp số liệu phát hiện tấn công", response_model=MetricsSnapshotDisplay)
def get_metrics(pipeline: ThreatPipeline = Depends(get_pipeline),
                user_info: Dict[str, Any] = Depends(require_security_admin)):
    """
    Số fingerprint đang theo dõi, số active threat (max_score > 70), tổng hit,
    số request bị chặn/throttle, top các fingerprint nguy hiểm nhất.
    """
    return Security_Admin_Controller.get_metrics(pipeline)

@router.get("/threats/{fingerprint}", summary="Lịch sử 1 fingerprint (1 giờ gần nhất)", response_model=ThreatEntryDisplay)
def get_threat(fingerprint: str,
               pipeline: ThreatPipeline = Depends(get_pipeline),
               user_info: Dict[str, Any] = Depends(require_security_admin)):
    return Security_Admin_Controller.get_threat(pipeline, fingerprint)

@router.get("/sessions/{user_id}", summary="Hồ sơ hành vi phiên của 1 user", response_model=SessionProfileDisplay)
def get_session(user_id: str,
                pipeline: ThreatPipeline = Depends(get_pipeline),
                user_info: Dict[str, Any] = Depends(require_security_admin)):
    """
    Tập IP, tập User-Agent, số request và nhật ký bất thường.
    Bất thường chỉ được ghi nhận, việc huỷ phiên do người vận hành quyết định.
    """
    return Security_Admin_Controller.get_session(pipeline, user_id)

@router.post("/sweep", summary="Dọn các entry hết hạn ngay lập tức", response_model=SweepResultDisplay)
def sweep_now(pipeline: ThreatPipeline = Depends(get_pipeline),
              user_info: Dict[str, Any] = Depends(require_security_admin)):
    return Security_Admin_Controller.sweep_now(pipeline, user_info)

@router.get("/export/metrics.xlsx", summary="Xuất Excel số liệu bảo mật")
def export_metrics(pipeline: ThreatPipeline = Depends(get_pipeline),
                   user_info: Dict[str, Any] = Depends(require_security_admin)):
    bio = Security_Admin_Controller.export_metrics_xlsx(pipeline)

    headers = {
        "Content-Disposition": 'attachment; filename="security_metrics.xlsx"',
        "Cache-Control": "no-store",
    }
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )
