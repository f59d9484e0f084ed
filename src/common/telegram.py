from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Union

import httpx


logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)
_MAX_ATTEMPTS = 5


class TelegramError(RuntimeError):
    """Base error for Telegram client."""


class TelegramApiError(TelegramError):
    """API returned an error payload or unexpected structure."""


class TelegramClient:
    """
    Minimal Telegram Bot API client covering `sendMessage` and `getUpdates`.

    Notes
    - Uses JSON request bodies.
    - Retries transport errors, 429 and 5xx with backoff, honoring `retry_after`.
    - `get_updates` extends the HTTP timeout by the long-poll timeout so the
      server can hold the request open.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        base_url = f"{self._api_base}/bot{token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=self._timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def send_message(
        self,
        chat_id: Union[int, str],
        text: str,
        *,
        parse_mode: Optional[str] = None,
        disable_web_page_preview: Optional[bool] = None,
        reply_to_message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Send a text message; returns the Message object (as dict)."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode is not None:
            payload["parse_mode"] = parse_mode
        if disable_web_page_preview is not None:
            payload["disable_web_page_preview"] = disable_web_page_preview
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = reply_to_message_id

        result = self._call("sendMessage", payload)
        if not isinstance(result, dict):
            raise TelegramApiError("Unexpected sendMessage result")
        return result

    def get_updates(
        self,
        *,
        offset: Optional[int] = None,
        limit: int = 100,
        timeout: int = 0,
        allowed_updates: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Long-poll `getUpdates`; returns the list of Update objects."""
        payload: Dict[str, Any] = {"limit": limit, "timeout": timeout}
        if offset is not None:
            payload["offset"] = offset
        if allowed_updates is not None:
            payload["allowed_updates"] = allowed_updates

        result = self._call("getUpdates", payload, http_timeout=self._timeout + timeout)
        if not isinstance(result, list):
            raise TelegramApiError("Unexpected getUpdates result")
        return [u for u in result if isinstance(u, dict)]

    # --------------- Internal ---------------
    def _call(
        self, method: str, payload: Dict[str, Any], *, http_timeout: Optional[float] = None
    ) -> Any:
        data = self._request(method, payload, http_timeout=http_timeout)
        # Expect Telegram's envelope: { ok: bool, result?: ..., description?: str }
        if not isinstance(data, dict) or "ok" not in data:
            raise TelegramApiError("Malformed response from Telegram Bot API")
        if data.get("ok") is True and "result" in data:
            return data["result"]
        desc = data.get("description") or "Telegram API error"
        code = data.get("error_code")
        raise TelegramApiError(f"{desc} (code={code})")

    @staticmethod
    def _retry_after(resp: httpx.Response) -> Optional[float]:
        # 429 bodies carry { parameters: { retry_after: N } }
        try:
            body = resp.json()
        except ValueError:
            return None
        params = body.get("parameters") if isinstance(body, dict) else None
        if isinstance(params, dict):
            ra = params.get("retry_after")
            if isinstance(ra, (int, float)):
                return float(ra)
        return None

    def _request(
        self, method: str, json_body: Dict[str, Any], *, http_timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        timeout = http_timeout if http_timeout is not None else self._timeout
        backoff = 0.5
        last_exc: Optional[Exception] = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                resp = self._client.post(f"/{method}", json=json_body, timeout=timeout)
            except httpx.TransportError as exc:
                last_exc = exc
                logger.warning("Telegram %s transport error (attempt %d): %s", method, attempt, exc)
                delay = backoff
            except httpx.HTTPError as exc:
                # Decoding errors, redirect loops: not transient
                raise TelegramError(f"Telegram {method} request failed: {exc}") from exc
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise TelegramApiError("Failed to parse JSON from Telegram API") from exc

                if resp.status_code not in _RETRYABLE_STATUS:
                    # 4xx bodies still use the envelope; let _call surface the description
                    try:
                        return resp.json()
                    except ValueError:
                        raise TelegramApiError(
                            f"HTTP {resp.status_code} from Telegram: {resp.text[:200]}"
                        ) from None

                last_exc = TelegramApiError(f"HTTP {resp.status_code} from Telegram")
                retry_after = self._retry_after(resp)
                delay = retry_after if retry_after is not None else backoff
                logger.warning(
                    "Telegram %s returned %d (attempt %d), retrying in %.1fs",
                    method, resp.status_code, attempt, delay,
                )

            if attempt < _MAX_ATTEMPTS:
                self._sleep(min(delay, 10.0))
                backoff = min(backoff * 2, 8.0)

        raise TelegramError(f"Telegram {method} failed after retries") from last_exc


__all__ = [
    "TelegramClient",
    "TelegramError",
    "TelegramApiError",
]
