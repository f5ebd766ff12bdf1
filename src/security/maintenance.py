import asyncio
from typing import List, Optional

from log.security_log import security_logger
from security.pipeline import ThreatPipeline


class SecurityMaintenance:
    """
    Tác vụ nền của pipeline, chạy trên event loop của app:
    - sweep định kỳ (mặc định 1 giờ) để dọn store
    - ghi metrics định kỳ theo profile (5 phút relaxed / 30 phút strict)
    start() ở lifespan startup, stop() ở shutdown để huỷ task sạch sẽ.
    """

    def __init__(self, pipeline: ThreatPipeline, sweep_interval: Optional[float] = None,
                 metrics_interval: Optional[float] = None):
        self.pipeline = pipeline
        self.sweep_interval = float(sweep_interval or pipeline.settings.sweep_interval_seconds)
        self.metrics_interval = float(metrics_interval or pipeline.settings.profile.metrics_interval_seconds)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def _every(self, interval: float, name: str, fn) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                fn()
            except Exception:
                # Lỗi ở 1 vòng không được làm chết task định kỳ
                security_logger.exception("Periodic security task %s failed", name)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.sweep_interval, "sweep", self.pipeline.sweep),
                                name="security-sweep"),
            asyncio.create_task(self._every(self.metrics_interval, "metrics", self.pipeline.log_metrics),
                                name="security-metrics"),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
