import logging
import os
from pathlib import Path

from fastapi import FastAPI

from artifacts_bot import config
from artifacts_bot.db import create_engine_from_url
from backend.routes import router
from backend.supervisor import Supervisor, init_supervisor
from backend.tasks import TaskStore

logger = logging.getLogger(__name__)


def create_app(data_dir: Path | None = None, database_url: str | None = None) -> FastAPI:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = config.load_settings()
    config.init_data_dir(data_dir or Path(os.getenv("DATA_DIR", str(settings.data_dir))))

    store = TaskStore(create_engine_from_url(database_url or settings.database_url))
    supervisor = init_supervisor(Supervisor(store))
    supervisor.recover()
    supervisor.store.cleanup_old_tasks()

    app = FastAPI(title="Artifacts Bot Control")
    app.include_router(router, prefix="/api")
    return app
