import os
from typing import Any, Dict, List, Optional

import httpx

from labelscan.core.config import settings

SERPAPI_BASE = "https://serpapi.com/search.json"


def serpapi_key() -> str:
    # Prefer pydantic settings, fallback to env
    key = (getattr(settings, "SERPAPI_API_KEY", "") or "").strip()
    if not key:
        key = (os.environ.get("SERPAPI_API_KEY", "") or "").strip()
    return key


def _get_serpapi_key() -> str:
    key = serpapi_key()
    if not key:
        raise ValueError("SERPAPI_API_KEY is not set")
    return key


async def google_search(
    q: str,
    gl: str = "us",
    hl: str = "en",
    num: int = 10,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Calls SerpAPI Google web search and returns the raw JSON response.
    Pass `client` to reuse a pooled connection (the pipeline does).
    """
    api_key = _get_serpapi_key()

    params: Dict[str, Any] = {
        "engine": "google",
        "q": q,
        "api_key": api_key,
        "gl": gl,
        "hl": hl,
    }

    try:
        params["num"] = max(1, min(int(num), 100))
    except Exception:
        params["num"] = 10

    if client is None:
        async with httpx.AsyncClient(timeout=60) as own_client:
            r = await own_client.get(SERPAPI_BASE, params=params)
    else:
        r = await client.get(SERPAPI_BASE, params=params)

    try:
        r.raise_for_status()
    except Exception:
        raise ValueError(f"SerpAPI request failed: {r.status_code}\nBODY:\n{r.text[:2000]}")

    data = r.json()

    # Normalize: if the engine returns an error payload, surface it clearly
    if isinstance(data, dict) and data.get("error"):
        raise ValueError(f"SerpAPI error: {data.get('error')}")

    return data


def organic_links(data: Dict[str, Any]) -> List[str]:
    links: List[str] = []
    for r in data.get("organic_results", []) or []:
        link = r.get("link")
        if isinstance(link, str) and link.strip().startswith("http"):
            links.append(link.strip())
    return links
