import re

import httpx
from fastapi import APIRouter, HTTPException

from labelscan.core.config import settings
from labelscan.core.search import SourceDiscoverer
from labelscan.schemas.lookup import LookupResponse, ProductInfo

router = APIRouter(prefix="/v1", tags=["lookup"])


@router.get("/lookup/{barcode}", response_model=LookupResponse)
async def lookup(barcode: str):
    """
    Product identity straight from the barcode databases (Open Food Facts,
    UPCitemdb, Go-UPC). No scraping, no AI.
    """
    if not re.fullmatch(r"\d{8,14}", barcode or ""):
        raise HTTPException(
            status_code=422,
            detail={"error": "invalid_barcode", "message": "Barcode must be 8-14 digits"},
        )

    async with httpx.AsyncClient(follow_redirects=True, timeout=settings.SEARCH_TIMEOUT_SECONDS) as client:
        details = await SourceDiscoverer(client, backends=[]).identify_product(barcode)

    if details is None:
        return LookupResponse(found=False)

    return LookupResponse(
        found=True,
        source=details.source,
        product=ProductInfo(
            name=details.name,
            brand=details.brand or None,
            ingredients_text=details.ingredients_text or None,
            image_url=details.image_url or None,
            barcode=barcode,
        ),
    )
