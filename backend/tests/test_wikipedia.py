"""Unit tests for the Wikipedia lookup."""

import httpx
import pytest

from groupchat.services.wikipedia import (
    MAX_EXTRACT_CHARS,
    WikipediaClient,
    WikipediaError,
    extract_summary,
)


def _response(extract: str | None, page_id: str = "42") -> dict:
    page = {} if extract is None else {"extract": extract}
    return {"query": {"pages": {page_id: page}}}


class TestExtractSummary:
    """Test parsing of API responses."""

    def test_extract(self):
        assert extract_summary(_response("Python is a language.")) == "Python is a language."

    def test_missing_page(self):
        assert extract_summary(_response(None, page_id="-1")) == "No information found on this topic."

    def test_page_without_extract(self):
        assert extract_summary(_response(None)) == "No summary available."

    def test_long_extract_truncated(self):
        summary = extract_summary(_response("x" * 5000))

        assert summary == "x" * MAX_EXTRACT_CHARS + "... [truncated]"

    def test_malformed_response(self):
        assert extract_summary({"error": "nope"}) == "Could not parse Wikipedia response."


class TestWikipediaClient:
    """Test the HTTP client against a mock transport."""

    @pytest.mark.asyncio
    async def test_summary_queries_intro_extract(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.url.params)
            return httpx.Response(200, json=_response("Ada Lovelace was a mathematician."))

        client = WikipediaClient(transport=httpx.MockTransport(handler))

        assert await client.summary("Ada Lovelace") == "Ada Lovelace was a mathematician."
        assert seen["titles"] == "Ada Lovelace"
        assert seen["exintro"] == "1"
        assert seen["explaintext"] == "1"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = WikipediaClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )

        with pytest.raises(WikipediaError, match="HTTP 503"):
            await client.summary("Anything")

    @pytest.mark.asyncio
    async def test_non_json_body_raises(self):
        """A 200 with an HTML error page is reported like any other API failure."""
        client = WikipediaClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>Service unavailable</html>")
            )
        )

        with pytest.raises(WikipediaError, match="Invalid JSON"):
            await client.summary("Anything")
