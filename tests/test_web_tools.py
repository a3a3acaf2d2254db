"""Web search and browser tools against a mocked HTTP transport."""

import json

import httpx
import pytest

from pysuna.tools.builtin_tools.browser_tool import BrowserTool
from pysuna.tools.builtin_tools.web_search_tool import DUCKDUCKGO_URL, WebSearchTool

PAGE = """<html><head><title>Example Page</title><style>body{}</style></head>
<body><h1>Hello</h1><script>var x = 1;</script><p>Some   text here.</p>
<a href="/about">About</a><a href="mailto:x@y.z">Mail</a><img src="logo.png"></body></html>"""


def _tavily_handler(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        return httpx.Response(
            200,
            json={
                "answer": f"answer for {body['query']}",
                "results": [
                    {"title": "One", "url": "https://www.reuters.com/a", "content": "first", "score": 0.9},
                    {"title": "Two", "url": "https://blog.example.com/b", "content": "second", "score": 0.5},
                ],
            },
        )

    return handler


async def _search_tool(handler, api_key="key"):
    tool = WebSearchTool(api_key=api_key, transport=httpx.MockTransport(handler))
    await tool.init()
    return tool


class TestWebSearch:
    async def test_tavily_search(self, context):
        seen = []
        tool = await _search_tool(_tavily_handler(seen))
        try:
            result = await tool.execute(
                "search", {"query": "python", "max_results": 2, "include_domains": ["python.org"]}, context
            )
        finally:
            await tool.cleanup()
        assert result.success
        assert result.data["total_results"] == 2
        assert result.data["answer"] == "answer for python"
        assert "search_time_ms" in result.data
        assert result.metadata["provider"] == "tavily"
        assert seen[0]["max_results"] == 2
        assert seen[0]["include_domains"] == ["python.org"]
        assert seen[0]["api_key"] == "key"

    async def test_duckduckgo_fallback(self, context):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url).startswith(DUCKDUCKGO_URL)
            assert request.url.params["q"] == "python"
            return httpx.Response(
                200,
                json={
                    "Heading": "Python",
                    "Abstract": "A programming language.",
                    "AbstractURL": "https://en.wikipedia.org/wiki/Python",
                    "RelatedTopics": [
                        {"Text": "CPython - reference implementation", "FirstURL": "https://duckduckgo.com/CPython"},
                        {"Name": "grouped topics without text"},
                    ],
                },
            )

        tool = await _search_tool(handler, api_key=None)
        result = await tool.execute("search", {"query": "python"}, context)
        await tool.cleanup()
        assert result.success
        assert result.metadata["provider"] == "duckduckgo"
        assert [r["title"] for r in result.data["results"]] == ["Python", "CPython"]

    async def test_http_error_is_backend_failure(self, context):
        tool = await _search_tool(lambda request: httpx.Response(500))
        result = await tool.execute("search", {"query": "python"}, context)
        await tool.cleanup()
        assert not result.success
        assert result.error_kind == "backend"
        assert "500" in result.error

    async def test_timeout_is_distinguishable(self, context):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        tool = await _search_tool(handler)
        result = await tool.execute("search", {"query": "python"}, context)
        await tool.cleanup()
        assert result.error_kind == "timeout"

    async def test_news_search_filters_news_domains(self, context):
        seen = []
        tool = await _search_tool(_tavily_handler(seen))
        result = await tool.execute("news_search", {"query": "ai", "location": "Berlin"}, context)
        await tool.cleanup()
        assert result.success
        assert [r["url"] for r in result.data["results"]] == ["https://www.reuters.com/a"]
        assert seen[0]["query"] == "ai news in Berlin"
        assert result.metadata["type"] == "news"

    async def test_research_dedupes_sources(self, context):
        seen = []
        tool = await _search_tool(_tavily_handler(seen))
        result = await tool.execute(
            "research", {"topic": "solar", "depth": "comprehensive", "include_academic": True}, context
        )
        await tool.cleanup()
        assert result.success
        assert len(seen) == 3
        assert result.data["total_sources"] == 2
        assert result.metadata["search_count"] == 3
        assert "answer for solar" in result.data["summary"]

    async def test_research_all_failed(self, context):
        tool = await _search_tool(lambda request: httpx.Response(503))
        result = await tool.execute("research", {"topic": "solar"}, context)
        await tool.cleanup()
        assert not result.success
        assert result.error == "All research searches failed"

    async def test_query_required(self, context):
        tool = await _search_tool(_tavily_handler([]))
        result = await tool.execute("search", {}, context)
        await tool.cleanup()
        assert result.error_kind == "validation"


@pytest.fixture
async def browser():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/missing":
            return httpx.Response(404)
        return httpx.Response(200, text=PAGE, headers={"content-type": "text/html"})

    tool = BrowserTool(transport=httpx.MockTransport(handler))
    await tool.init()
    yield tool
    await tool.cleanup()


class TestBrowser:
    async def test_extract_text_links_and_images(self, browser, context):
        result = await browser.execute(
            "extract_content",
            {"url": "https://example.com/page", "extract_links": True, "extract_images": True},
            context,
        )
        assert result.success
        assert result.data["title"] == "Example Page"
        assert result.data["content"] == "Hello Some text here. About Mail"
        assert result.data["links"] == ["https://example.com/about"]
        assert result.data["images"] == ["https://example.com/logo.png"]
        assert result.metadata["status_code"] == 200

    async def test_extract_truncates(self, browser, context):
        result = await browser.execute(
            "extract_content", {"url": "https://example.com/page", "max_length": 5}, context
        )
        assert result.data["content"] == "Hello..."

    async def test_non_2xx_is_backend_failure(self, browser, context):
        result = await browser.execute("extract_content", {"url": "https://example.com/missing"}, context)
        assert not result.success
        assert result.error_kind == "backend"
        assert result.error.startswith("HTTP 404")

    async def test_only_http_urls(self, browser, context):
        result = await browser.execute("navigate", {"url": "file:///etc/passwd"}, context)
        assert not result.success
        assert result.error_kind == "validation"

    async def test_navigate_fetches_the_page(self, browser, context):
        result = await browser.execute("navigate", {"url": "https://example.com/page"}, context)
        assert result.success
        assert result.data["title"] == "Example Page"
        assert result.data["status_code"] == 200
        assert browser.current_url == "https://example.com/page"

    async def test_navigate_to_missing_page_fails(self, browser, context):
        result = await browser.execute("navigate", {"url": "https://example.com/missing"}, context)
        assert result.error_kind == "backend"
        assert browser.current_url is None

    @pytest.mark.parametrize(
        "error, kind",
        [(httpx.ConnectError, "backend"), (httpx.ReadTimeout, "timeout")],
    )
    async def test_navigate_to_unreachable_host_fails(self, context, error, kind):
        def handler(request):
            raise error("unreachable", request=request)

        tool = BrowserTool(transport=httpx.MockTransport(handler))
        await tool.init()
        result = await tool.execute("navigate", {"url": "https://unreachable.invalid/"}, context)
        current = tool.current_url
        await tool.cleanup()

        assert not result.success
        assert result.error_kind == kind
        assert current is None

    @pytest.mark.parametrize(
        "function, params",
        [
            ("click_element", {"selector": "#go"}),
            ("fill_form", {"selector": "#q", "value": "x"}),
            ("take_screenshot", {}),
            ("wait_for_element", {"selector": "#q"}),
        ],
    )
    async def test_interactive_operations_need_a_session(self, browser, context, function, params):
        result = await browser.execute(function, params, context)
        assert not result.success
        assert result.error.endswith("requires an active browser session")
