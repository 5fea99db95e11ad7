"""
Delivery provider boundary.

The consumer only depends on DeliveryProvider.send(). Which implementation
runs (real HTTP gateway or the simulation) is chosen by build_provider()
from settings.
"""

import json
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from outbound.exceptions import ProviderTimeoutError, ProviderTransportError
from outbound.policy import Outcome
from outbound.status import MessageStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderResponse:
    """Provider-defined free-text status plus optional reason."""

    status: str
    reason: Optional[str] = None


class DeliveryProvider(ABC):
    """Base class for delivery providers."""

    @abstractmethod
    def send(self, to: str, from_: str, body: str) -> ProviderResponse:
        """
        Submit one message.

        Raises:
            ProviderTimeoutError: no answer within the client timeout
            ProviderTransportError: connection, HTTP or decoding failure
        """

    def close(self) -> None:
        pass


class HttpDeliveryProvider(DeliveryProvider):
    """SMS gateway reached over HTTP with a JSON body."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._url = url
        self._timeout = timeout
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def send(self, to: str, from_: str, body: str) -> ProviderResponse:
        """
        POST the message and parse the gateway's answer.

        httpx applies its timeout per phase (connect, each read); the whole
        call, including a body trickled in small chunks, is additionally held
        to one overall deadline of `timeout` seconds.
        """
        payload = {"to": to, "from": from_, "message": body}
        deadline = time.monotonic() + self._timeout
        try:
            with self._client.stream("POST", self._url, json=payload) as response:
                response.raise_for_status()
                chunks = []
                for chunk in response.iter_bytes():
                    if time.monotonic() > deadline:
                        raise self._timed_out()
                    chunks.append(chunk)
            if time.monotonic() > deadline:
                raise self._timed_out()
            data = json.loads(b"".join(chunks))
        except httpx.TimeoutException as e:
            raise self._timed_out(e)
        except httpx.HTTPStatusError as e:
            raise ProviderTransportError(
                f"HTTP request failed: status {e.response.status_code}", cause=e
            )
        except httpx.HTTPError as e:
            raise ProviderTransportError(f"HTTP request failed: {e}", cause=e)
        except ValueError as e:
            raise ProviderTransportError("Provider returned an undecodable response", cause=e)

        if not isinstance(data, dict) or not data.get("status"):
            raise ProviderTransportError("Provider response has no status")
        return ProviderResponse(status=str(data["status"]), reason=data.get("reason"))

    def _timed_out(self, cause: Optional[Exception] = None) -> ProviderTimeoutError:
        return ProviderTimeoutError(f"API request timed out after {self._timeout:g}s", cause=cause)

    def close(self) -> None:
        self._client.close()


class SimulatedDeliveryProvider(DeliveryProvider):
    """
    Stand-in gateway: sleeps, then succeeds with a fixed probability.

    Pass `rng` (a random.Random) for deterministic runs.
    """

    def __init__(
        self,
        success_rate: float = 0.95,
        delay_seconds: float = 3.0,
        rng: Optional[random.Random] = None,
    ):
        self._success_rate = success_rate
        self._delay_seconds = delay_seconds
        self._rng = rng or random.Random()

    def send(self, to: str, from_: str, body: str) -> ProviderResponse:
        if self._delay_seconds > 0:
            time.sleep(self._delay_seconds)
        if self._rng.random() < self._success_rate:
            return ProviderResponse(status=MessageStatus.SUCCESSFULLY_SENT.value)
        return ProviderResponse(
            status=MessageStatus.FAILED_PROVIDER_ERROR.value,
            reason="Temporary API error",
        )


def build_provider(settings) -> DeliveryProvider:
    """Pick the provider implementation named by PROVIDER_MODE."""
    mode = settings.PROVIDER_MODE.lower()
    if mode == "http":
        logger.info(f"Using HTTP delivery provider at {settings.PROVIDER_URL}")
        return HttpDeliveryProvider(
            url=settings.PROVIDER_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if mode == "simulated":
        logger.info("Using simulated delivery provider")
        return SimulatedDeliveryProvider(
            success_rate=settings.SIMULATED_SUCCESS_RATE,
            delay_seconds=settings.SIMULATED_DELAY_SECONDS,
        )
    raise ValueError(f"Unknown PROVIDER_MODE: {settings.PROVIDER_MODE!r}")


# Free-text statuses providers are known to answer with
_PROVIDER_STATUS_MAP = {
    "successfully sent": MessageStatus.SUCCESSFULLY_SENT,
    "sent": MessageStatus.SUCCESSFULLY_SENT,
    "success": MessageStatus.SUCCESSFULLY_SENT,
    "delivered": MessageStatus.SUCCESSFULLY_SENT,
    "not sent - not a valid phone": MessageStatus.NOT_SENT_INVALID_ADDRESS,
    "invalid_number": MessageStatus.NOT_SENT_INVALID_ADDRESS,
    "not sent - not valid by time zone": MessageStatus.NOT_SENT_OUT_OF_WINDOW,
    "failed - api error": MessageStatus.FAILED_PROVIDER_ERROR,
}


def classify_provider_status(response: ProviderResponse) -> Outcome:
    """
    Map a provider's free-text status onto a terminal status.

    Unknown statuses become Failed - API Error carrying the provider's text.
    A successful send never carries a reason.
    """
    status = _PROVIDER_STATUS_MAP.get(response.status.strip().lower())
    if status is None:
        reason = f"Unrecognized provider status: {response.status}"
        if response.reason:
            reason = f"{reason} ({response.reason})"
        return Outcome(MessageStatus.FAILED_PROVIDER_ERROR, reason)
    if status == MessageStatus.SUCCESSFULLY_SENT:
        return Outcome(status)
    return Outcome(status, response.reason)
