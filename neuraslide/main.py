import logging

from fastapi import FastAPI

from neuraslide import models  # noqa: F401
from neuraslide.api.webhooks import router as webhooks_router
from neuraslide.db import Base, engine
from neuraslide.errors import register_error_handlers
from neuraslide.logging import configure_logging

logger = logging.getLogger(__name__)

app = FastAPI(title="NeuraSlide Webhooks API")

configure_logging()
register_error_handlers(app)

app.include_router(webhooks_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.on_event("startup")
def _create_schema():
    Base.metadata.create_all(engine)
    logger.info("database_schema_ready dialect=%s", engine.dialect.name)
