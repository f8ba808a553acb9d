from typing import Any

import httpx

from invoice_pipeline.extraction.base import (
    BaseExtractionClient,
    ExtractionState,
    ExtractionStatus,
)
from invoice_pipeline.extraction.exceptions import (
    ExtractionNetworkError,
    ExtractionRequestError,
)
from invoice_pipeline.extraction.fields import flatten_fields

_PENDING = {"notStarted", "running"}


class AzureDocumentIntelligenceAdapter(BaseExtractionClient):
    """Azure AI Document Intelligence REST client (analyze + poll)."""

    def __init__(
        self,
        *,
        endpoint: str,
        api_key: str,
        api_version: str,
        timeout_seconds: int,
        client: httpx.Client | None = None,
    ) -> None:
        if not endpoint:
            raise ValueError("extraction_endpoint is required for extraction_provider=azure")
        self._endpoint = endpoint.rstrip("/")
        self._api_version = api_version
        self._client = client if client is not None else httpx.Client(
            timeout=timeout_seconds,
            headers={"Ocp-Apim-Subscription-Key": api_key},
        )

    def submit(self, document: bytes, model_id: str) -> str:
        url = f"{self._endpoint}/documentintelligence/documentModels/{model_id}:analyze"
        response = self._send(
            "POST",
            url,
            params={"api-version": self._api_version},
            content=document,
            headers={"Content-Type": "application/pdf"},
        )
        if response.status_code != 202:
            raise ExtractionRequestError(
                f"Unexpected analyze response {response.status_code}: {response.text[:200]}"
            )
        handle = response.headers.get("Operation-Location")
        if not handle:
            raise ExtractionRequestError("Analyze response has no Operation-Location header")
        return handle

    def poll(self, handle: str) -> ExtractionStatus:
        response = self._send("GET", handle)
        try:
            body: dict[str, Any] = response.json()
        except ValueError as exc:
            raise ExtractionRequestError(f"Poll response is not JSON: {exc}") from exc

        status = body.get("status")
        if status in _PENDING:
            return ExtractionStatus(
                state=ExtractionState.PENDING,
                retry_after_seconds=_retry_after(response),
            )
        if status == "succeeded":
            documents = (body.get("analyzeResult") or {}).get("documents") or []
            raw_fields = documents[0].get("fields", {}) if documents else {}
            return ExtractionStatus(
                state=ExtractionState.SUCCEEDED,
                fields=flatten_fields(raw_fields),
            )
        if status == "failed":
            return ExtractionStatus(state=ExtractionState.FAILED, error=_error_detail(body))
        raise ExtractionRequestError(f"Unknown operation status '{status}'")

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise ExtractionNetworkError(f"Extraction service network error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ExtractionNetworkError(
                f"Extraction service unavailable ({response.status_code})"
            )
        if response.status_code >= 400:
            raise ExtractionRequestError(
                f"Extraction service rejected request ({response.status_code}): "
                f"{_error_detail(_safe_json(response))}"
            )
        return response


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(int(value), 0)
    except ValueError:
        return None


def _safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"error": {"message": response.text[:200]}}
    return body if isinstance(body, dict) else {}


def _error_detail(body: dict[str, Any]) -> str:
    error = body.get("error") or {}
    code = error.get("code")
    message = error.get("message") or "analysis failed"
    inner = (error.get("innererror") or {}).get("message")
    detail = f"{code}: {message}" if code else message
    return f"{detail} ({inner})" if inner else detail
