"""
LabelScan API - FastAPI Main Entry

✅ LOCAL:
    cd backend
    python -m uvicorn labelscan.main:app --reload --host 0.0.0.0 --port 8000

✅ TEST:
    curl -i http://127.0.0.1:8000/health
    curl -i http://127.0.0.1:8000/v1/lookup/070662230015
    curl -N -X POST http://127.0.0.1:8000/v1/analyze \
         -H 'content-type: application/json' -d '{"barcode": "070662230015"}'

✅ PRODUCTION:
    Build Command:
        pip install .

    Start Command:
        python -m uvicorn labelscan.main:app --host 0.0.0.0 --port $PORT

✅ ENV (backend/.env locally):
    GEMINI_API_KEY=...        required for verification + final report
    SERPAPI_API_KEY=...       optional, adds SerpAPI as a search backend
    LOG_LEVEL=INFO
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labelscan.core.config import settings

# ✅ Routers
from labelscan.api.routes_analyze import router as analyze_router
from labelscan.api.routes_lookup import router as lookup_router
from labelscan.api.routes_meta import router as meta_router


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO; the pipeline makes hundreds.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="LabelScan API",
        version=settings.APP_VERSION,
        description="Barcode -> cross-verified ingredient, allergen and diet profile",
    )

    # ✅ CORS
    # The scanner page and browser tools call this directly.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ✅ Root (GET /)
    @app.get("/")
    def root():
        return {
            "name": "LabelScan API",
            "status": "ok",
            "docs": "/docs",
            "health": "/health",
            "version": "/version",
        }

    # ✅ Health Check (GET /health)
    @app.get("/health")
    def health():
        return {"ok": True}

    # ✅ Mount routers
    app.include_router(meta_router)
    app.include_router(analyze_router)
    app.include_router(lookup_router)

    return app


app = create_app()
