"""FastAPI application for claim submission."""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..bootstrap import build_components
from ..config import load_settings
from ..domain.errors import TransientBrokerError
from ..infra.logger import StructLogger, setup_logging
from ..infra.xray import setup_xray
from ..service.submission import ClaimSubmitter
from .routes import router


def create_app(submitter: Optional[ClaimSubmitter] = None) -> FastAPI:
    """Create the API app; without a submitter one is built from the environment."""
    logger = StructLogger("cert-api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.submitter is not None:
            yield
            return

        logger.info("Starting cert-api...")
        settings = load_settings(logger)
        setup_xray("cert-api", settings.xray_enabled)

        components = build_components(settings, logger)
        try:
            components.broker.init()
        except TransientBrokerError as e:
            # each submission reconnects first and answers 503 while the store is down
            logger.warning("Job broker unreachable at startup", error=str(e))

        app.state.submitter = ClaimSubmitter(
            broker=components.broker,
            status_store=components.status_store,
            metrics_client=components.metrics_client,
            logger=logger,
        )
        logger.info("cert-api started successfully", table_name=settings.jobs_table)

        yield

        logger.info("Shutting down cert-api...")
        components.broker.close()

    app = FastAPI(
        title="Certificate Pipeline API",
        description="API for submitting approved claims for certificate generation",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.submitter = submitter

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {"service": "cert-api", "version": "0.1.0", "status": "running"}

    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
