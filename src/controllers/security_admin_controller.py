import io
import time
from typing import Any, Dict

from fastapi import HTTPException, status
from openpyxl import Workbook  # tạo file xlsx

from log.security_log import security_logger
from security.pipeline import ThreatPipeline


def _iso_utc(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts))


class Security_Admin_Controller:
    """
    Controller xử lý các API quản trị bảo mật.
    Quyền Admin/Boss đã được kiểm tra ở dependency require_security_admin trước khi vào đây.
    """

    def get_metrics(pipeline: ThreatPipeline) -> Dict[str, Any]:
        """Ảnh chụp số liệu hiện tại."""
        return pipeline.metrics_snapshot()

    def get_threat(pipeline: ThreatPipeline, fingerprint: str) -> Dict[str, Any]:
        """
        Lịch sử của 1 fingerprint. Không có (hoặc đã hết hạn) -> 404
        """
        entry = pipeline.history.get(fingerprint)
        if entry is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"message": f"Không tìm thấy fingerprint: {fingerprint}"},
            )
        return entry.to_dict()

    def get_session(pipeline: ThreatPipeline, user_id: str) -> Dict[str, Any]:
        """
        Hồ sơ hành vi phiên của 1 user. Không có (hoặc đã hết hạn) -> 404
        """
        profile = pipeline.sessions.get_profile(user_id)
        if profile is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"message": f"Không có hồ sơ phiên cho user: {user_id}"},
            )
        return profile.to_dict()

    def sweep_now(pipeline: ThreatPipeline, user_info: Dict[str, Any]) -> Dict[str, int]:
        """Chạy dọn store ngay lập tức (không chờ lịch định kỳ)."""
        security_logger.info("Manual security sweep requested by %s", user_info.get("Email"))
        return pipeline.sweep()

    def export_metrics_xlsx(pipeline: ThreatPipeline) -> io.BytesIO:
        """
        Xuất file Excel gồm 2 sheet:
        - Summary: các chỉ số tổng hợp
        - ActiveThreats: fingerprint có max_score vượt ngưỡng active
        """
        snapshot = pipeline.metrics_snapshot()

        wb = Workbook()

        # --- Sheet 1: Summary ---
        ws1 = wb.active
        ws1.title = "Summary"
        ws1.append(["Metric", "Value"])
        ws1.append(["Timestamp(UTC)", _iso_utc(snapshot["timestamp"])])
        for key in ("profile", "tracked_fingerprints", "active_threats", "total_hits", "high_threat_hits",
                    "rate_windows", "session_profiles", "blocked_requests", "throttled_requests"):
            value = snapshot[key]
            ws1.append([key, "n/a" if value is None else value])

        # --- Sheet 2: ActiveThreats ---
        ws2 = wb.create_sheet("ActiveThreats")
        ws2.append(["Fingerprint", "MaxScore", "Hits", "FirstSeen(UTC)", "LastSeen(UTC)"])
        for it in snapshot["top_threats"]:
            ws2.append([it["fingerprint"], it["max_score"], it["hit_count"],
                        _iso_utc(it["first_seen"]), _iso_utc(it["last_seen"])])

        # Ghi workbook vào memory (BytesIO) để trả về StreamingResponse
        bio = io.BytesIO()
        wb.save(bio)
        bio.seek(0)
        return bio
