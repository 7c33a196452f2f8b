import logging

from fastapi import FastAPI

from app.db.session import Base, engine

# Imported for their side effect of registering tables on Base.metadata
from app.models import audit, download, order, product, review, upload, user  # noqa: F401

logger = logging.getLogger(__name__)


def register_startup(app: FastAPI) -> None:
    @app.on_event("startup")
    def _create_tables() -> None:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")
