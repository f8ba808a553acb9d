from invoice_pipeline.bootstrap import build_services, build_worker
from invoice_pipeline.config.settings import Settings
from invoice_pipeline.database.connection import close_pool, init_pool
from invoice_pipeline.logging.logger import Log


def main() -> None:
    """Entry point: initialize pool -> build dependencies -> start worker loop."""
    settings = Settings()
    Log.configure(settings.log_level)
    init_pool(settings)

    try:
        services = build_services(settings)
        worker = build_worker(services)
        worker.run()
    finally:
        close_pool()


if __name__ == "__main__":
    main()
