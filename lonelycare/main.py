"""
FastAPI host for the lonely-care monitoring core
Exposes event ingestion and monitor state over REST
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from lonelycare.config import MonitorSettings, settings as default_settings
from lonelycare.database import SqlAlchemyRepository
from lonelycare.logging_config import get_logger, setup_logging
from lonelycare.models import (
    ActivityEvent, ActivityReport, EventIngestResult, HourBucket,
    HourlyHistoryEntry, NotificationAttempt, SubjectStatus,
)
from lonelycare.monitor import ActivityMonitor
from lonelycare.repository import ActivityRepository
from lonelycare.sensor_source import SerialSensorSource

logger = get_logger(__name__)


def create_app(settings: Optional[MonitorSettings] = None,
               repository: Optional[ActivityRepository] = None,
               monitor: Optional[ActivityMonitor] = None) -> FastAPI:
    """Build the app. Tests pass their own settings, repository or monitor."""
    settings = settings or default_settings
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        logger.info("Starting lonely-care monitor host")

        active_monitor = monitor
        if active_monitor is None:
            repo = repository
            if repo is None:
                repo = SqlAlchemyRepository(settings.database_url)
                repo.init_db()
            active_monitor = ActivityMonitor(settings=settings, repository=repo)

        if settings.serial_port:
            active_monitor.add_source(SerialSensorSource(settings.serial_port, settings.baud_rate))

        app.state.monitor = active_monitor
        await active_monitor.start()

        yield

        logger.info("Shutting down")
        await active_monitor.stop()

    app = FastAPI(
        title="lonely-care Monitor API",
        description="Inactivity detection and alerting for monitored subjects",
        version="1.0.0",
        lifespan=lifespan
    )

    # Enable CORS for the app shell
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== API ENDPOINTS ====================

    @app.get("/")
    def root(request: Request):
        """Root endpoint - API status"""
        monitor_ = request.app.state.monitor
        return {
            "status": "running" if monitor_.running else "stopped",
            "name": "lonely-care Monitor API",
            "version": "1.0.0",
            "subjects": len(monitor_.subjects),
            "pending_retries": monitor_.dispatcher.pending_retries,
        }

    @app.get("/api/activity/current", response_model=HourBucket)
    def get_current_bucket(request: Request):
        """Current hour's activity count."""
        monitor_ = request.app.state.monitor
        monitor_.tick_hour()
        return monitor_.status().current_bucket

    @app.get("/api/activity/history", response_model=List[HourlyHistoryEntry])
    def get_history(request: Request, hours: Optional[int] = None):
        """Archived hourly counts, oldest first."""
        history = request.app.state.monitor.counter.history()
        if hours is not None:
            history = history[-hours:] if hours > 0 else []
        return history

    @app.post("/api/events", response_model=EventIngestResult)
    def ingest_event(event: ActivityEvent, request: Request):
        """Feed one sensor or interaction event through the classifier."""
        monitor_ = request.app.state.monitor
        return monitor_.handle_event(event)

    @app.get("/api/subjects", response_model=List[SubjectStatus])
    def list_subjects(request: Request):
        return request.app.state.monitor.list_subjects()

    @app.get("/api/subjects/{subject_id}", response_model=SubjectStatus)
    def get_subject(subject_id: str, request: Request):
        status = request.app.state.monitor.get_subject(subject_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Subject {subject_id} is not monitored")
        return status

    @app.put("/api/subjects/{subject_id}", response_model=SubjectStatus)
    def add_subject(subject_id: str, request: Request, report: Optional[ActivityReport] = None):
        """Start monitoring a subject."""
        last_activity: Optional[datetime] = report.timestamp if report else None
        return request.app.state.monitor.add_subject(subject_id, last_activity)

    @app.delete("/api/subjects/{subject_id}")
    async def remove_subject(subject_id: str, request: Request):
        """Stop monitoring a subject and cancel its pending notifications."""
        if not request.app.state.monitor.remove_subject(subject_id):
            raise HTTPException(status_code=404, detail=f"Subject {subject_id} is not monitored")
        return {"removed": subject_id}

    @app.post("/api/subjects/{subject_id}/activity", response_model=SubjectStatus)
    def report_activity(subject_id: str, request: Request, report: Optional[ActivityReport] = None):
        """Heartbeat, friend-reported motion or explicit check-in."""
        monitor_ = request.app.state.monitor
        at = report.timestamp if report else None
        monitor_.report_activity(subject_id, at)
        return monitor_.get_subject(subject_id)

    @app.post("/api/monitor/tick", response_model=List[NotificationAttempt])
    async def run_tick(request: Request):
        """Run a monitoring tick now instead of waiting for the schedule."""
        return await request.app.state.monitor.run_monitoring_tick()

    return app


app = create_app()


# ==================== MAIN ====================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "lonelycare.main:app",
        host=default_settings.api_host,
        port=default_settings.api_port,
    )
