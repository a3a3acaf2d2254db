from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from ..base import BaseTool, ErrorKind, ToolContext, ToolResult
from ..schema import OperationSpec, ParamSpec
from ...log import log_fields

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
DUCKDUCKGO_URL = "https://api.duckduckgo.com/"

NEWS_DOMAIN_HINTS = (
    "news", "reuters", "ap.org", "bbc", "cnn", "npr", "guardian",
    "nytimes", "washingtonpost", "wsj", "bloomberg", "techcrunch",
)
ACADEMIC_DOMAINS = ["scholar.google.com", "arxiv.org", "pubmed.ncbi.nlm.nih.gov"]


class SearchError(RuntimeError):
    def __init__(self, message: str, kind: ErrorKind = "backend"):
        self.kind = kind
        super().__init__(message)


class WebSearchTool(BaseTool):
    name = "web_search"
    description = "Search the web for information, news, and research topics"
    version = "1.0.0"

    operations = (
        OperationSpec(
            name="search",
            description="Search the web for information",
            tag_name="web_search",
            params=(
                ParamSpec("query", "string", "Search query", required=True),
                ParamSpec("max_results", "integer", "Maximum number of results", default=10, minimum=1, maximum=50),
                ParamSpec("include_answer", "boolean", "Include an AI-generated answer", default=True),
                ParamSpec("search_depth", "string", "Search depth", default="basic", enum=("basic", "advanced")),
                ParamSpec("include_domains", "array", "Only search these domains", items="string"),
                ParamSpec("exclude_domains", "array", "Domains to exclude", items="string"),
            ),
            examples=(
                {"query": "latest AI developments", "max_results": 5},
                {"query": "climate change", "include_domains": ["nasa.gov", "noaa.gov"]},
            ),
        ),
        OperationSpec(
            name="news_search",
            description="Search for recent news",
            tag_name="news_search",
            params=(
                ParamSpec("query", "string", "News search query", required=True),
                ParamSpec("max_results", "integer", "Maximum number of results", default=10, minimum=1, maximum=50),
                ParamSpec("days", "integer", "Number of days to look back", default=7, minimum=1),
                ParamSpec("location", "string", "Geographic location for news"),
            ),
            examples=({"query": "technology news", "days": 3},),
        ),
        OperationSpec(
            name="research",
            description="Conduct research on a topic by combining several searches",
            tag_name="research_topic",
            params=(
                ParamSpec("topic", "string", "Research topic", required=True),
                ParamSpec("depth", "string", "Research depth", default="quick", enum=("quick", "comprehensive")),
                ParamSpec("max_sources", "integer", "Maximum number of sources", default=5, minimum=1, maximum=30),
                ParamSpec("include_academic", "boolean", "Include academic sources", default=False),
            ),
            examples=({"topic": "renewable energy trends", "depth": "comprehensive"},),
        ),
    )

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def init(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"User-Agent": "pysuna/0.1"},
            )
        await super().init()
        if self.api_key:
            logger.info("Web search tool initialized with Tavily API")
        else:
            logger.warning("Tavily API key not configured, web search will use the DuckDuckGo fallback")

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await super().cleanup()

    @property
    def provider(self) -> str:
        return "tavily" if self.api_key else "duckduckgo"

    def handlers(self):
        return {"search": self._search, "news_search": self._news_search, "research": self._research}

    # -- backends --

    async def _get_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if self._client is None:
            raise SearchError("Web search tool is not initialized", "internal")
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SearchError(f"Search request timed out: {e}", "timeout") from e
        except httpx.HTTPError as e:
            raise SearchError(f"Search request failed: {e}") from e
        if resp.status_code >= 300:
            raise SearchError(f"{self.provider} API error: {resp.status_code} {resp.reason_phrase}")
        try:
            data = resp.json()
        except ValueError as e:
            raise SearchError(f"{self.provider} returned invalid JSON") from e
        return data if isinstance(data, dict) else {}

    async def _tavily(
        self,
        query: str,
        max_results: int,
        include_answer: bool,
        search_depth: str,
        include_domains: list[str] | None,
        exclude_domains: list[str] | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "api_key": self.api_key,
            "query": query,
            "search_depth": search_depth,
            "include_answer": include_answer,
            "max_results": max_results,
        }
        if include_domains:
            body["include_domains"] = include_domains
        if exclude_domains:
            body["exclude_domains"] = exclude_domains
        data = await self._get_json("POST", TAVILY_URL, json=body)
        results = [
            {
                "title": r.get("title", ""),
                "url": r.get("url", ""),
                "content": r.get("content", ""),
                "published_date": r.get("published_date"),
                "score": r.get("score"),
            }
            for r in data.get("results") or []
            if isinstance(r, dict)
        ]
        return {"query": query, "results": results, "answer": data.get("answer"), "total_results": len(results)}

    async def _duckduckgo(self, query: str, max_results: int) -> dict[str, Any]:
        data = await self._get_json(
            "GET",
            DUCKDUCKGO_URL,
            params={"q": query, "format": "json", "no_html": "1", "skip_disambig": "1"},
        )
        results: list[dict[str, Any]] = []
        if data.get("Abstract"):
            results.append({
                "title": data.get("Heading") or "Summary",
                "url": data.get("AbstractURL") or "",
                "content": data["Abstract"],
            })
        for topic in (data.get("RelatedTopics") or [])[: max(max_results - 1, 0)]:
            if isinstance(topic, dict) and topic.get("Text") and topic.get("FirstURL"):
                results.append({
                    "title": topic["Text"].split(" - ")[0] or "Related Topic",
                    "url": topic["FirstURL"],
                    "content": topic["Text"],
                })
        return {
            "query": query,
            "results": results[:max_results],
            "answer": data.get("Abstract") or None,
            "total_results": len(results[:max_results]),
        }

    async def run_search(
        self,
        query: str,
        max_results: int = 10,
        include_answer: bool = True,
        search_depth: str = "basic",
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
    ) -> dict[str, Any]:
        start = time.perf_counter()
        if self.api_key:
            out = await self._tavily(query, max_results, include_answer, search_depth, include_domains, exclude_domains)
        else:
            out = await self._duckduckgo(query, max_results)
        out["search_time_ms"] = int(round((time.perf_counter() - start) * 1000))
        return out

    # -- handlers --

    async def _search(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        logger.info(
            "Performing web search",
            extra=log_fields(provider=self.provider, max_results=params.max_results, user_id=_user(context)),
        )
        try:
            out = await self.run_search(
                params.query,
                params.max_results,
                params.include_answer,
                params.search_depth,
                params.include_domains,
                params.exclude_domains,
            )
        except SearchError as e:
            return ToolResult.fail(f"Search failed: {e}", e.kind)
        return ToolResult.ok(
            data=out,
            metadata={"searched_at": _now(), "provider": self.provider},
        )

    async def _news_search(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        news_query = f"{params.query} news" + (f" in {params.location}" if params.location else "")
        try:
            out = await self.run_search(news_query, params.max_results, include_answer=False)
        except SearchError as e:
            return ToolResult.fail(f"News search failed: {e}", e.kind)
        news = [r for r in out["results"] if any(h in r["url"] for h in NEWS_DOMAIN_HINTS)]
        return ToolResult.ok(
            data={
                "query": params.query,
                "results": news[: params.max_results],
                "total_results": len(news),
                "search_time_ms": out["search_time_ms"],
            },
            metadata={"searched_at": _now(), "type": "news", "days": params.days, "location": params.location},
        )

    async def _research(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        comprehensive = params.depth == "comprehensive"
        searches = [
            self.run_search(
                params.topic,
                max(1, -(-params.max_sources // 2)),
                include_answer=True,
                search_depth="advanced" if comprehensive else "basic",
            )
        ]
        if params.include_academic:
            searches.append(
                self.run_search(
                    f"{params.topic} academic research",
                    max(1, params.max_sources // 3),
                    search_depth="advanced",
                    include_domains=ACADEMIC_DOMAINS,
                )
            )
        if comprehensive:
            searches.append(
                self.run_search(
                    f"{params.topic} recent developments",
                    max(1, params.max_sources // 3),
                    include_answer=False,
                )
            )

        logger.info(
            "Conducting research",
            extra=log_fields(depth=params.depth, searches=len(searches), user_id=_user(context)),
        )
        outcomes = await asyncio.gather(*searches, return_exceptions=True)
        succeeded = [o for o in outcomes if isinstance(o, dict)]
        for o in outcomes:
            if isinstance(o, BaseException) and not isinstance(o, SearchError):
                raise o
        if not succeeded:
            first = next(o for o in outcomes if isinstance(o, SearchError))
            return ToolResult.fail("All research searches failed", first.kind)

        seen: set[str] = set()
        unique: list[dict[str, Any]] = []
        answers: list[str] = []
        for o in succeeded:
            for r in o["results"]:
                if r["url"] in seen:
                    continue
                seen.add(r["url"])
                unique.append(r)
            if o.get("answer"):
                answers.append(o["answer"])

        return ToolResult.ok(
            data={
                "topic": params.topic,
                "results": unique[: params.max_sources],
                "summary": "\n\n".join(answers),
                "total_sources": len(unique),
                "research_depth": params.depth,
            },
            metadata={"researched_at": _now(), "search_count": len(succeeded)},
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user(context: ToolContext | None) -> str | None:
    return context.user_id if context else None
