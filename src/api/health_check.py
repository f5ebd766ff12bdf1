from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(
    tags= ["Health"]
)


@router.get("/healthz", summary="Liveness check")
async def healthz():
    """
    Kiểm tra sống/chết cơ bản của tiến trình.
    """
    return {"status": "ok"}

@router.get("/readyz", summary="Readiness check")
def readyz(request: Request):
    """
    Kiểm tra sẵn sàng: pipeline đã khởi tạo + Redis (nếu bộ đếm chạy trên Redis).
    Trả 200 nếu ok, 503 nếu có bất kỳ lỗi nào.
    """
    checks = {}

    pipeline = getattr(request.app.state, "threat_pipeline", None)
    checks["pipeline"] = "ok" if pipeline is not None else "error: not initialized"

    if pipeline is not None and pipeline.rate_tracker.backend == "redis":
        checks["redis"] = "ok" if pipeline.rate_tracker.ping() else "error: unreachable"

    ok = all(val == "ok" for val in checks.values())
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "error", "checks": checks},
    )
