import argparse
import logging
import signal
import sys
import threading

from .config import get_settings


def setup_logging(log_level: str = "INFO") -> None:
    """Configure application logging."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("backoff").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("psycopg2").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _build_runtime(settings):
    """Database managers, broadcaster, service and event stream from settings."""
    from .core.db import get_database_manager, wait_for_db
    from .core.events import EventBroadcaster, EventStream
    from .core.pipeline import build_service

    if not settings.database_url:
        logger.warning("DATABASE_URL not set. Pipeline routes will return 503.")
        return None, None, None

    if not wait_for_db(settings.database_url):
        logger.error("Database did not become reachable; starting without pipeline")
        return None, None, None

    db_manager = get_database_manager(settings.database_url)
    db_manager.init_db()

    queue_db = db_manager
    if settings.queue_database_url and settings.queue_database_url != settings.database_url:
        queue_db = get_database_manager(settings.queue_database_url)
        queue_db.init_db()

    broadcaster = EventBroadcaster()
    service = build_service(settings, db_manager, queue_db=queue_db, broadcaster=broadcaster)
    stream = EventStream(service.events, broadcaster, poll_interval=settings.event_poll_interval)
    return db_manager, service, stream


def _build_worker(settings, service):
    from .core.queue import PipelineWorker

    return PipelineWorker(
        service.queue,
        service.dispatch,
        poll_interval=settings.worker_poll_interval,
        max_concurrent=settings.worker_concurrency,
        drain_timeout=settings.worker_drain_timeout,
    )


def serve(args, settings):
    db_manager, service, stream = _build_runtime(settings)

    worker = None
    if service is not None and not args.no_worker:
        worker = _build_worker(settings, service)
        worker.start()

    from .api.app import create_app
    app = create_app(db_manager, service, stream, settings)

    import uvicorn

    logger.info(f"Starting FastAPI server on http://0.0.0.0:{args.port}")
    try:
        uvicorn.run(
            app,
            host="0.0.0.0",
            port=args.port,
            log_level=args.log_level.lower(),
        )
    finally:
        if worker is not None:
            worker.stop()
        if service is not None:
            service.events.shutdown()


def run_worker(args, settings):
    _, service, _ = _build_runtime(settings)
    if service is None:
        logger.error("Worker needs DATABASE_URL")
        sys.exit(1)

    worker = _build_worker(settings, service)
    done = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, stopping worker")
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    worker.start()
    logger.info(f"Worker {worker.worker_id} running")
    done.wait()
    worker.stop()
    service.events.shutdown()


def main():
    """Main entry point for Revive."""
    parser = argparse.ArgumentParser(description="Revive - Legacy Migration Pipeline")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    parser.set_defaults(port=9005, no_worker=False)
    sub = parser.add_subparsers(dest="command")

    serve_parser = sub.add_parser("serve", help="Run the API (and an in-process worker)")
    serve_parser.add_argument("--port", type=int, default=9005, help="Port for the API server")
    serve_parser.add_argument("--no-worker", action="store_true", help="Do not start the queue worker")

    sub.add_parser("worker", help="Run the queue worker only")

    args = parser.parse_args()
    setup_logging(args.log_level)
    settings = get_settings()

    if args.command == "worker":
        run_worker(args, settings)
    else:
        serve(args, settings)


if __name__ == "__main__":
    main()
