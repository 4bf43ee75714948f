import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse

from labelscan.core.pipeline import (
    AnalysisFailedError,
    NoVerifiedSourcesError,
    resolve_barcode,
    resolve_events,
)
from labelscan.schemas.analyze import AnalysisResult, AnalyzeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["analyze"])


@router.post("/analyze")
async def analyze(req: AnalyzeRequest):
    """
    Streams NDJSON progress events: {"type": "status", "message": ...} lines,
    then exactly one {"type": "result", "data": ...} or {"type": "error", ...}.
    A client disconnect closes the generator, which cancels the resolution.
    """

    async def stream():
        async for event in resolve_events(req.barcode, req.known_title or ""):
            yield event.to_line()

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@router.post("/analyze/report", response_model=AnalysisResult)
async def analyze_report(req: AnalyzeRequest):
    try:
        return await resolve_barcode(req.barcode, req.known_title or "")

    except NoVerifiedSourcesError as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "no_sources", "message": str(e), "barcode": e.barcode},
        )

    except AnalysisFailedError as e:
        error = e.consensus_error
        if error.retry_after_seconds is not None:
            # Still rate limited after retries: 429 with Retry-After
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "rate_limited",
                    "message": error.message,
                    "retry_after_seconds": error.retry_after_seconds,
                },
                headers={"Retry-After": str(error.retry_after_seconds)},
            )

        # Upstream model misbehaved: 502, with its raw output for debugging
        raise HTTPException(
            status_code=502,
            detail={
                "error": "analysis_failed",
                "message": error.message,
                "raw_model_output": error.raw,
            },
        )

    except Exception as e:
        # Always answer with a JSON error, never a bare 500
        logger.exception("Resolution failed for %s", req.barcode)
        raise HTTPException(
            status_code=502,
            detail={"error": "resolution_failed", "message": f"{type(e).__name__}: {e}", "barcode": req.barcode},
        )
