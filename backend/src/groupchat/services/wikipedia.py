"""Wikipedia intro lookups for the /wiki command."""

import logging

import httpx

logger = logging.getLogger(__name__)

WIKIPEDIA_API_URL = "https://en.wikipedia.org/w/api.php"
MAX_EXTRACT_CHARS = 2000


class WikipediaError(Exception):
    """The lookup failed (network or API error)."""


def extract_summary(data: dict) -> str:
    """Pull the intro extract of the first page out of an API response."""
    try:
        pages = data["query"]["pages"]
        first_page_id = next(iter(pages))
    except (KeyError, TypeError, StopIteration):
        return "Could not parse Wikipedia response."

    # Page id -1 means the title does not exist
    if first_page_id == "-1":
        return "No information found on this topic."

    extract = pages[first_page_id].get("extract")
    if not extract:
        return "No summary available."

    if len(extract) > MAX_EXTRACT_CHARS:
        return f"{extract[:MAX_EXTRACT_CHARS]}... [truncated]"
    return extract


class WikipediaClient:
    """HTTP client for the MediaWiki query API."""

    def __init__(
        self,
        base_url: str = WIKIPEDIA_API_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport

    async def summary(self, topic: str) -> str:
        """Intro extract for a topic, truncated for posting into a chat."""
        params = {
            "format": "json",
            "action": "query",
            "prop": "extracts",
            "exintro": "1",
            "explaintext": "1",
            "redirects": "1",
            "titles": topic,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.get(self.base_url, params=params)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"Wikipedia HTTP error: {e}")
                raise WikipediaError(f"HTTP {e.response.status_code}") from e
            except httpx.RequestError as e:
                logger.error(f"Wikipedia request error: {e}")
                raise WikipediaError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Wikipedia returned a non-JSON body: {e}")
            raise WikipediaError("Invalid JSON response") from e
        return extract_summary(data)
