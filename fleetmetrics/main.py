import asyncio
from typing import Optional
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from .config import Config, config, setup_logging
from .db import SessionLocal, init_db
from .api.endpoints import router as api_router
from .computation import ReportCycleProcessor, TaskMetricsComputation, VehicleDayComputation
from .locks import build_lock_provider
from .orchestrator import BatchOrchestrator
from .persistence import SqlStore
from .task_status import TaskStatusEvaluator
from .wsmanager import BroadcastEventPublisher, ConnectionManager

logger = setup_logging()

def create_app(session_factory=None, lock_provider=None, sleep=None, clock=None,
               settings: Optional[Config] = None) -> FastAPI:
    """Wire the engine against a session factory and expose it over HTTP."""
    settings = settings or config
    segmentation = settings.get_segmentation_config()
    fleet = settings.get_fleet_config()
    lock = settings.get_lock_config()

    app = FastAPI(
        title="Fleet Metrics Engine",
        description="GPS telemetry analytics and efficiency computations for vehicle fleets",
        version="1.0.0"
    )

    if settings.enable_cors:
        app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    manager = ConnectionManager()
    publisher = BroadcastEventPublisher(manager)
    store = SqlStore(session_factory or SessionLocal, batch_size=settings.stream_batch_size)
    lock_provider = lock_provider or build_lock_provider(lock["backend"], settings.redis_url)

    clock_kwargs = {"clock": clock} if clock is not None else {}
    evaluator = TaskStatusEvaluator(
        publisher=publisher,
        status_writer=store.update_task_status,
        min_presence_percent=segmentation["min_presence_percent"],
        **clock_kwargs
    )
    engine_kwargs = dict(
        evaluator=evaluator,
        max_gap_seconds=segmentation["max_gap_seconds"],
        default_expected_hours=segmentation["default_expected_daily_work_hours"],
        check_every=settings.cancel_check_every,
        **clock_kwargs
    )
    # On-demand paths share the fleet units' per-vehicle leases
    locked_kwargs = dict(
        lock_provider=lock_provider,
        lock_expire_seconds=lock["expire_seconds"],
        lock_wait_seconds=lock["wait_seconds"],
        **engine_kwargs
    )

    app.state.settings = settings
    app.state.store = store
    app.state.manager = manager
    app.state.publisher = publisher
    app.state.task_computation = TaskMetricsComputation(store, store, store, store, **locked_kwargs)
    app.state.report_processor = ReportCycleProcessor(store, store, store, store,
                                                      publisher=publisher, **locked_kwargs)
    app.state.orchestrator = BatchOrchestrator(
        store,
        VehicleDayComputation(store, store, store, store, chart_sink=store, **engine_kwargs),
        lock_provider,
        max_workers=fleet["max_workers"],
        default_chunk_size=fleet["chunk_size"],
        max_attempts=fleet["max_attempts"],
        backoff_seconds=fleet["backoff_seconds"],
        unit_timeout_seconds=fleet["timeout_seconds"],
        lock_expire_seconds=lock["expire_seconds"],
        lock_release_after_seconds=lock["release_after_seconds"],
        lock_wait_seconds=lock["wait_seconds"],
        sleep=sleep,
        max_retained_runs=fleet["runs_retained"],
        **clock_kwargs
    )

    # Include API routes
    app.include_router(api_router, prefix="/api")

    @app.on_event("startup")
    async def startup():
        """Initialize database and attach the event loop for pushes."""
        if session_factory is None:
            init_db()
        publisher.attach(asyncio.get_running_loop())
        logger.info("Fleet metrics engine started")

    @app.on_event("shutdown")
    async def shutdown():
        app.state.orchestrator.shutdown(wait=False)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.websocket("/ws/events")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for task status and zone events."""
        await manager.connect(websocket)
        try:
            while True:
                # Keep connection alive; subscribers only listen
                await websocket.receive_text()
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app

app = create_app()
