import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv(dotenv_path=Path(__file__).parent / ".env", override=False)

from corpwell.config import OnboardingSettings  # noqa: E402
from corpwell.database import SessionLocal  # noqa: E402
from corpwell.routers.onboarding import router as onboarding_router  # noqa: E402
from corpwell.services.bulk_onboarding import BulkOnboardingService, build_onboarding_service  # noqa: E402

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")


def create_app(service: Optional[BulkOnboardingService] = None) -> FastAPI:
    """Build the API. Pass a service to run against pre-wired collaborators (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        onboarding = service
        if onboarding is None:
            settings = OnboardingSettings.from_env()
            onboarding = build_onboarding_service(settings, SessionLocal)
            logger.info(
                "Onboarding pipeline ready: batch_size=%d workers=%d store=%s recommender=%s",
                settings.batch_size, settings.max_concurrent_batches,
                settings.job_store_backend, settings.recommender_provider,
            )
        app.state.onboarding = onboarding
        try:
            yield
        finally:
            logger.info("Shutting down onboarding pipeline")
            onboarding.shutdown(wait=True)

    app = FastAPI(title="Corpwell Onboarding API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in CORS_ORIGINS],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(onboarding_router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
