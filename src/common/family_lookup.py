from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


DEFAULT_TIMEOUT = 15.0


class FamilyLookupError(RuntimeError):
    """Base error for the family lookup gateway.

    `user_message` is safe to show to chat users; the exception text itself
    may carry upstream details and is meant for logs only.
    """

    user_message = "Lookup service error"


class LookupTransportError(FamilyLookupError):
    """The request could not be completed (connect error, timeout, ...)."""

    user_message = "Lookup service is unreachable"


class LookupHttpStatusError(FamilyLookupError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        msg = f"HTTP {status_code} from lookup service"
        super().__init__(f"{msg}: {detail}" if detail else msg)

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"HTTP {self.status_code}"


class MalformedResponseError(FamilyLookupError):
    """Body could not be parsed into a family record."""

    user_message = "Lookup service returned an unreadable response"


class RecordNotFoundError(FamilyLookupError):
    """Parsed body has no member list."""

    user_message = "No data found"


def _number_to_str(v: Any) -> Any:
    # Upstream sends ids (and the odd code field) as JSON numbers on some records
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


class FamilyMember(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    member_name: Optional[str] = Field(default=None, alias="memberName")
    relationship_name: Optional[str] = Field(default=None, alias="releationship_name")
    member_id: Optional[str] = Field(default=None, alias="memberId")

    @field_validator("member_name", "relationship_name", "member_id", mode="before")
    @classmethod
    def coerce_numbers(cls, v: Any) -> Any:
        return _number_to_str(v)


class FamilyRecord(BaseModel):
    """Family/group record returned by the lookup endpoint.

    Only `memberDetailsList` is required; everything else renders as "N/A"
    when missing. Member order is preserved as received.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scheme_name: Optional[str] = Field(default=None, alias="schemeName")
    district: Optional[str] = Field(default=None, alias="homeDistName")
    state: Optional[str] = Field(default=None, alias="homeStateName")
    address: Optional[str] = None
    members: List[FamilyMember] = Field(default_factory=list, alias="memberDetailsList")

    @field_validator("scheme_name", "district", "state", "address", mode="before")
    @classmethod
    def coerce_numbers(cls, v: Any) -> Any:
        return _number_to_str(v)


class FamilyLookupClient:
    """
    Single-shot client for the upstream family lookup endpoint.

    Notes
    - The identifier is URL-encoded and appended to `base_url` verbatim, so the
      base usually ends with "=" or "/" (e.g. "https://host/api/family?id=").
    - One GET per call: no retries and no caching. A bounded timeout is applied.
    - Callers are expected to validate the identifier shape beforehand.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self._timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "FamilyLookupClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def build_url(self, identifier: str) -> str:
        return f"{self._base_url}{quote(str(identifier), safe='')}"

    def fetch_family_record(self, identifier: str) -> FamilyRecord:
        """
        Fetch and parse the family record for `identifier`.

        Raises
        - LookupTransportError: network failure or timeout
        - LookupHttpStatusError: non-2xx response
        - MalformedResponseError: body is not a JSON object or fails validation
        - RecordNotFoundError: no `memberDetailsList` in the body
        """
        url = self.build_url(identifier)
        try:
            resp = self._client.get(url, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise LookupTransportError(f"Lookup request failed: {exc}") from exc

        if not resp.is_success:
            raise LookupHttpStatusError(resp.status_code, resp.text[:200])

        try:
            payload = resp.json()
        except ValueError as exc:
            raise MalformedResponseError("Failed to parse JSON from lookup service") from exc

        return self._parse_payload(payload)

    # --------------- Internal ---------------
    @staticmethod
    def _parse_payload(payload: Any) -> FamilyRecord:
        if not isinstance(payload, dict):
            # A JSON null is how the upstream reports unknown ids
            if payload is None:
                raise RecordNotFoundError("Empty body from lookup service")
            raise MalformedResponseError(
                f"Expected a JSON object, got {type(payload).__name__}"
            )
        data: Dict[str, Any] = payload
        if data.get("memberDetailsList") is None:
            raise RecordNotFoundError("memberDetailsList missing in payload")
        try:
            return FamilyRecord.model_validate(data)
        except ValidationError as ve:
            raise MalformedResponseError(f"Failed to parse family payload: {ve}") from ve


__all__ = [
    "FamilyLookupClient",
    "FamilyLookupError",
    "LookupTransportError",
    "LookupHttpStatusError",
    "MalformedResponseError",
    "RecordNotFoundError",
    "FamilyRecord",
    "FamilyMember",
]
