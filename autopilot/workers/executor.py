import logging
from typing import Any, Dict, Optional, Protocol
import httpx
from .retry import RetryRunner, retry_external_call
from ..models.errors import ExecutionError, FacebookAPIError, RetryExhaustedError
from ..models.job import ExecutionResult


class Executor(Protocol):
    """Performs the externally visible side effect for one job."""

    async def execute(self, job_id: str) -> ExecutionResult: ...


class FacebookPublisher:
    """Publishes scheduled posts to Facebook pages via the Graph API"""

    GRAPH_API_URL = "https://graph.facebook.com/v18.0"
    USER_AGENT = "AutopilotScheduler/1.0"

    def __init__(
        self,
        storage,
        page_tokens: Dict[str, str],
        graph_api_url: str = GRAPH_API_URL,
        timeout: float = 30.0,
        client: httpx.AsyncClient = None,
        runner: RetryRunner = None,
        logger: logging.Logger = None,
    ):
        self.storage = storage
        self.page_tokens = dict(page_tokens)
        self.graph_api_url = graph_api_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, headers={"User-Agent": self.USER_AGENT})
        self.logger = logger or logging.getLogger(__name__)
        self.runner = runner or RetryRunner(logger=self.logger)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def execute(self, job_id: str) -> ExecutionResult:
        self.logger.info(f"Executing scheduled post {job_id}")
        job = await self.storage.get_job(job_id)
        if job is None:
            raise ExecutionError(f"Scheduled job {job_id} not found", retriable=False)

        token = self.page_tokens.get(job.page_id)
        if not token:
            raise ExecutionError(
                f"Page {job.page_id} has no access token configured", retriable=False)

        params = {"message": job.content, "access_token": token}
        if job.media_url:
            params["url"] = job.media_url
            url = f"{self.graph_api_url}/{job.page_id}/photos"
        else:
            url = f"{self.graph_api_url}/{job.page_id}/feed"

        self.logger.info(f"Publishing to Facebook page {job.page_id} for job {job_id}")
        data = await self._request("POST", url, params, "publishPost")
        content_id = data.get("post_id") or data.get("id")
        if not content_id:
            raise FacebookAPIError("Facebook API response did not include a post id")

        self.logger.info(f"Post published successfully for job {job_id}: {content_id}")
        return ExecutionResult(content_id=content_id)

    async def _request(self, method: str, url: str, params: Dict[str, Any], operation: str) -> Dict[str, Any]:
        async def _send():
            self.logger.info(f"Making Facebook API request: {operation}")
            response = await self.client.request(method, url, params=params)
            response.raise_for_status()
            return response.json()

        try:
            return await retry_external_call(_send, operation, 3, self.runner)
        except RetryExhaustedError as e:
            self.logger.error(f"Facebook API request failed: {operation}: {e.last_error}")
            raise self._map_error(e.last_error) from e

    @staticmethod
    def _map_error(error: Optional[BaseException]) -> FacebookAPIError:
        if isinstance(error, httpx.TimeoutException):
            return FacebookAPIError("Request timed out. Please check your network connection.", 504, error)

        status_code = None
        message = str(error)
        if isinstance(error, httpx.HTTPStatusError):
            status_code = error.response.status_code
            try:
                message = error.response.json()["error"]["message"]
            except (ValueError, KeyError, TypeError):
                pass

        lowered = message.lower()
        if status_code == 401 or "expired" in lowered or "invalid" in lowered:
            return FacebookAPIError(
                "Authentication token expired or invalid. Please reconnect your Facebook account.", 401, error)
        if status_code == 403:
            return FacebookAPIError("Access denied. Please check your Facebook permissions.", 403, error)
        if status_code == 429:
            return FacebookAPIError("Rate limit exceeded. Please try again later.", 429, error)
        return FacebookAPIError(f"Facebook API error: {message}", status_code or 500, error)
