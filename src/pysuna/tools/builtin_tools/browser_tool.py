from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from html.parser import HTMLParser
from urllib.parse import urljoin, urlparse

import httpx
from pydantic import BaseModel

from ..base import BaseTool, ToolContext, ToolResult
from ..schema import OperationSpec, ParamSpec
from ...log import log_fields

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 50000
_SESSION_REQUIRED = "{action} requires an active browser session"


class _PageExtractor(HTMLParser):
    """Collect visible text, the title, and link/image targets from HTML."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self._in_title = False
        self.title = ""
        self.links: list[str] = []
        self.images: list[str] = []

    def handle_starttag(self, tag: str, attrs):  # type: ignore[override]
        tag = tag.lower()
        if tag in {"script", "style", "noscript"}:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag == "a":
            href = dict(attrs).get("href")
            if href:
                self.links.append(href)
        elif tag == "img":
            src = dict(attrs).get("src")
            if src:
                self.images.append(src)

    def handle_endtag(self, tag: str):  # type: ignore[override]
        tag = tag.lower()
        if tag in {"script", "style", "noscript"} and self._skip_depth > 0:
            self._skip_depth -= 1
        elif tag == "title":
            self._in_title = False

    def handle_data(self, data: str):  # type: ignore[override]
        if self._skip_depth > 0:
            return
        if self._in_title:
            self.title += data.strip()
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def text(self) -> str:
        return re.sub(r"\s+", " ", " ".join(self._parts)).strip()


def _absolute(base: str, refs: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for ref in refs:
        url = urljoin(base, ref)
        if urlparse(url).scheme not in ("http", "https") or url in seen:
            continue
        seen.add(url)
        out.append(url)
    return out


def _check_url(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return "Only HTTP and HTTPS URLs are supported"
    if not parsed.netloc:
        return f"Invalid URL: {url}"
    return None


class BrowserTool(BaseTool):
    name = "browser_automation"
    description = "Navigate to pages and extract their text, links and images"
    version = "1.0.0"

    operations = (
        OperationSpec(
            name="navigate",
            description="Navigate to a URL",
            tag_name="browser_navigate",
            params=(
                ParamSpec("url", "string", "URL to navigate to", required=True),
                ParamSpec(
                    "wait_for", "string", "Wait condition", default="load",
                    enum=("load", "domcontentloaded", "networkidle"),
                ),
                ParamSpec("timeout", "integer", "Timeout in seconds", default=30, minimum=1, maximum=120),
            ),
            examples=({"url": "https://example.com"},),
        ),
        OperationSpec(
            name="extract_content",
            description="Fetch a page and extract its readable content",
            tag_name="browser_extract",
            params=(
                ParamSpec("url", "string", "URL to extract content from", required=True),
                ParamSpec("selector", "string", "CSS selector to narrow extraction (recorded only)"),
                ParamSpec("extract_text", "boolean", "Strip markup and return text", default=True),
                ParamSpec("extract_links", "boolean", "Extract links", default=False),
                ParamSpec("extract_images", "boolean", "Extract images", default=False),
                ParamSpec("max_length", "integer", "Maximum content length", default=DEFAULT_MAX_LENGTH, minimum=1),
            ),
            examples=({"url": "https://example.com", "extract_links": True},),
        ),
        OperationSpec(
            name="click_element",
            description="Click an element on the current page",
            params=(
                ParamSpec("selector", "string", "CSS selector of element to click", required=True),
                ParamSpec("wait_for", "string", "CSS selector to wait for after click"),
                ParamSpec("timeout", "integer", "Timeout in seconds", default=5, minimum=1),
            ),
        ),
        OperationSpec(
            name="fill_form",
            description="Fill a form input on the current page",
            params=(
                ParamSpec("selector", "string", "CSS selector of form input", required=True),
                ParamSpec("value", "string", "Value to fill", required=True),
                ParamSpec("submit", "boolean", "Submit form after filling", default=False),
            ),
        ),
        OperationSpec(
            name="take_screenshot",
            description="Take a screenshot of the current page",
            params=(
                ParamSpec("full_page", "boolean", "Take full page screenshot", default=False),
                ParamSpec("selector", "string", "CSS selector to screenshot a specific element"),
                ParamSpec("image_format", "string", "Image format", default="png", enum=("png", "jpeg")),
            ),
        ),
        OperationSpec(
            name="wait_for_element",
            description="Wait for an element to appear on the current page",
            params=(
                ParamSpec("selector", "string", "CSS selector to wait for", required=True),
                ParamSpec("timeout", "integer", "Timeout in seconds", default=10, minimum=1),
                ParamSpec("visible", "boolean", "Wait for element to be visible", default=True),
            ),
        ),
    )

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__()
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.current_url: str | None = None

    async def init(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
                headers={"User-Agent": "Mozilla/5.0 (compatible; pysuna/0.1)"},
            )
        await super().init()
        logger.info("Browser tool initialized")

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.current_url = None
        await super().cleanup()

    def handlers(self):
        return {
            "navigate": self._navigate,
            "extract_content": self._extract_content,
            "click_element": self._session_required("Click element"),
            "fill_form": self._session_required("Fill form"),
            "take_screenshot": self._session_required("Screenshot"),
            "wait_for_element": self._session_required("Wait for element"),
        }

    def _session_required(self, action: str):
        async def handler(params: BaseModel, context: ToolContext | None) -> ToolResult:
            return ToolResult.fail(_SESSION_REQUIRED.format(action=action), "backend")

        return handler

    async def _fetch(self, url: str, action: str, timeout: float | None = None) -> httpx.Response | ToolResult:
        if self._client is None:
            return ToolResult.fail("Browser tool is not initialized", "internal")
        try:
            resp = await self._client.get(url, timeout=timeout if timeout is not None else self.timeout)
        except httpx.TimeoutException as e:
            return ToolResult.fail(f"{action} timed out: {e}", "timeout")
        except httpx.HTTPError as e:
            return ToolResult.fail(f"{action} failed: {e}", "backend")
        if resp.status_code >= 400:
            return ToolResult.fail(f"HTTP {resp.status_code}: {resp.reason_phrase}", "backend")
        return resp

    async def _navigate(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        bad = _check_url(params.url)
        if bad:
            return ToolResult.fail(bad, "validation")
        logger.info(
            "Navigating",
            extra=log_fields(host=urlparse(params.url).hostname, user_id=context.user_id if context else None),
        )
        resp = await self._fetch(params.url, "Navigation", timeout=params.timeout)
        if isinstance(resp, ToolResult):
            return resp

        parser = _PageExtractor()
        parser.feed(resp.text)
        parser.close()
        self.current_url = str(resp.url)
        return ToolResult.ok(
            data={
                "url": params.url,
                "title": parser.title,
                "status_code": resp.status_code,
                "current_url": self.current_url,
            },
            metadata={
                "wait_for": params.wait_for,
                "timeout": params.timeout,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def _extract_content(self, params: BaseModel, context: ToolContext | None) -> ToolResult:
        bad = _check_url(params.url)
        if bad:
            return ToolResult.fail(bad, "validation")
        resp = await self._fetch(params.url, "Content extraction")
        if isinstance(resp, ToolResult):
            return resp

        html = resp.text
        parser = _PageExtractor()
        parser.feed(html)
        parser.close()

        content = parser.text() if params.extract_text else html
        if len(content) > params.max_length:
            content = content[: params.max_length] + "..."

        data = {
            "url": params.url,
            "title": parser.title,
            "content": content,
            "content_length": len(content),
        }
        if params.extract_links:
            data["links"] = _absolute(str(resp.url), parser.links)
        if params.extract_images:
            data["images"] = _absolute(str(resp.url), parser.images)

        logger.debug(
            "Extracted page content",
            extra=log_fields(status=resp.status_code, content_length=len(content)),
        )
        return ToolResult.ok(
            data=data,
            metadata={
                "extracted_at": datetime.now(timezone.utc).isoformat(),
                "selector": params.selector,
                "status_code": resp.status_code,
            },
        )
