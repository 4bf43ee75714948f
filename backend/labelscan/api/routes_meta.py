import os
from fastapi import APIRouter

from labelscan.core import serpapi
from labelscan.core.config import settings

router = APIRouter(tags=["meta"])


@router.get("/version")
def version():
    return {
        "version": settings.APP_VERSION,
        "build": settings.BUILD_ID,
        "render_git_commit": os.environ.get("RENDER_GIT_COMMIT"),
        # What a resolution will do with this deployment's config
        "pipeline": {
            "max_cycles": settings.MAX_CYCLES,
            "target_sources": settings.TARGET_SOURCES,
            "serpapi_enabled": bool(serpapi.serpapi_key()),
            "oracle_configured": bool(settings.GEMINI_API_KEY or os.environ.get("GEMINI_API_KEY")),
        },
    }
