"""HTTP generation provider."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

import httpx

from ..config import GenerationConfig
from ..errors import FatalStepError, RetryableStepError
from .base import BaseGenerator, GenerationInput

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a professional legal attorney drafting formal legal letters. "
    "Always produce professional, legally sound content with proper formatting."
)

REQUIREMENTS = """Requirements:
- Professional formal tone
- Legally sound language
- Proper letter formatting
- Clear and concise
- Include all relevant details
- End with appropriate closing"""

_AMOUNT_KEYS = ("amountDemanded", "amount_demanded")
_DEADLINE_KEYS = ("deadlineDate", "deadline_date")
_INCIDENT_KEYS = ("incidentDate", "incident_date")
_TRAILING_KEYS = set(_AMOUNT_KEYS + _DEADLINE_KEYS + _INCIDENT_KEYS)


def humanize(key: str) -> str:
    """``incidentLocation`` / ``incident_location`` -> ``Incident Location``."""
    spaced = re.sub(r"([A-Z])", r" \1", key).replace("_", " ")
    spaced = " ".join(spaced.split())
    return spaced[:1].upper() + spaced[1:]


def _first(payload: Dict[str, Any], keys: tuple) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _money(value: Any) -> str:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return str(value)
    if number.is_integer():
        return f"${int(number):,}"
    return f"${number:,.2f}"


def build_prompt(category: str, payload: Dict[str, Any]) -> str:
    """Render the generation prompt for a request.

    Fields appear in payload order with humanised names; the amount,
    deadline and incident date always come last.
    """
    lines = []
    for key, value in payload.items():
        if key in _TRAILING_KEYS or value in (None, ""):
            continue
        lines.append(f"{humanize(key)}: {value}")

    amount = _first(payload, _AMOUNT_KEYS)
    if amount is not None:
        lines.append(f"Amount Demanded: {_money(amount)}")
    deadline = _first(payload, _DEADLINE_KEYS)
    if deadline is not None:
        lines.append(f"Deadline: {deadline}")
    incident = _first(payload, _INCIDENT_KEYS)
    if incident is not None:
        lines.append(f"Incident Date: {incident}")

    details = "\n".join(lines)
    return f"Generate a professional legal {category} with the following details:\n\n{details}\n\n{REQUIREMENTS}"


class HttpGenerator(BaseGenerator):
    """Calls a completion endpoint over HTTP.

    One call is one attempt; the step executor owns retries. Responses
    with status 429 or 5xx and transport errors are transient, other
    4xx responses are permanent refusals.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4-turbo",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        temperature: float = 0.7,
        max_tokens: int = 2048,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "HttpGenerator":
        if not config.endpoint:
            raise ValueError("generation.endpoint is not configured")
        return cls(config.endpoint, config.api_key, config.model, config.timeout)

    async def generate(self, request: GenerationInput) -> str:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "model": self.model,
            "system": SYSTEM_PROMPT,
            "prompt": build_prompt(request.category, request.payload),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            response = await self._client.post(self.endpoint, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning(f"Generation endpoint returned {status}: {exc.response.text[:200]}")
            if status == 429 or status >= 500:
                raise RetryableStepError(f"generation endpoint returned {status}") from exc
            raise FatalStepError(f"generation refused with {status}: {exc.response.text[:200]}") from exc
        except httpx.TransportError as exc:
            raise RetryableStepError(f"generation endpoint unreachable: {exc}") from exc

        data = response.json()
        content = data.get("content") or data.get("text") or ""
        if not content and data.get("choices"):
            choice = data["choices"][0]
            content = choice.get("text") or (choice.get("message") or {}).get("content") or ""
        logger.debug(f"Generated {len(content)} characters for {request.category}")
        return content

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
