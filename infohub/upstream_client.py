"""
HTTP client for third-party market-data APIs.
"""

import httpx
from typing import Optional, Dict, Any

# Some exchanges reject requests without a browser-like user agent
_COMMON_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}


class UpstreamError(Exception):
    """Upstream API error."""
    def __init__(self, message: str, status_code: Optional[int]):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(UpstreamError):
    """Rate limit exceeded."""
    pass


class UpstreamClient:
    """
    Thin async JSON client shared by every upstream source.

    One instance is created per application and closed on shutdown.
    """

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize client.

        Args:
            timeout: Default per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers=_COMMON_HEADERS,
            transport=transport,
            follow_redirects=True,
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """
        Send a request and decode the JSON body.

        Raises:
            RateLimitError: On HTTP 429
            UpstreamError: On any other non-2xx status, transport error or bad JSON
        """
        try:
            response = await self.client.request(method, url, **kwargs)

            if response.status_code == 429:
                raise RateLimitError(f"Rate limit exceeded: {url}", 429)

            response.raise_for_status()

            return response.json()

        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"{e.response.status_code} from {e.request.url.host}",
                status_code=e.response.status_code
            )
        except httpx.TimeoutException:
            raise UpstreamError(f"Timeout: {url}", None)
        except httpx.RequestError as e:
            raise UpstreamError(f"Request error: {str(e) or type(e).__name__}", None)
        except ValueError as e:
            raise UpstreamError(f"Invalid JSON from {url}: {e}", None)

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        GET `url` and return the decoded JSON body.

        Args:
            url: Absolute URL
            params: Query parameters
            headers: Extra headers merged over the common ones
            timeout: Per-call timeout override in seconds
        """
        return await self._request(
            "GET", url,
            params=params,
            headers=headers,
            timeout=timeout if timeout is not None else self.timeout,
        )

    async def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        timeout: Optional[float] = None
    ) -> Any:
        """POST a JSON body to `url` and return the decoded JSON body."""
        return await self._request(
            "POST", url,
            json=body,
            timeout=timeout if timeout is not None else self.timeout,
        )
