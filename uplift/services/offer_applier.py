"""Offer applier sinks that receive a rolled-out winning variant."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from uplift.core.config import Settings, get_settings
from uplift.core.exceptions import OfferApplierError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WinningOffer:
    """What the checkout needs to serve the winner to all future traffic."""

    experiment_id: uuid.UUID
    variant_id: uuid.UUID
    experiment_type: str
    value: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment_id": str(self.experiment_id),
            "variant_id": str(self.variant_id),
            "type": self.experiment_type,
            "value": self.value,
        }


class OfferApplier(Protocol):
    """Sink that changes live checkout behaviour."""

    async def apply(self, offer: WinningOffer) -> None: ...


class LoggingOfferApplier:
    """Records rollouts in the log only. Used when no webhook is configured."""

    async def apply(self, offer: WinningOffer) -> None:
        logger.info("Winning offer ready to apply", extra={"offer": offer.to_dict()})


class WebhookOfferApplier:
    """Posts rollouts to an HTTP endpoint owned by the checkout integration."""

    MAX_RETRIES = 3
    RETRY_DELAY = 0.5  # seconds

    def __init__(
        self,
        url: str,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client (lazy initialization)."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.offer_applier_timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def apply(self, offer: WinningOffer) -> None:
        """Deliver the offer, retrying server errors and timeouts.

        Raises:
            OfferApplierError: On a client error or once retries run out.
        """
        payload = offer.to_dict()
        last_error: str = "no attempt made"

        for attempt in range(self.MAX_RETRIES):
            try:
                response = await self.client.post(self.url, json=payload)
            except httpx.TimeoutException:
                last_error = "timeout"
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
            else:
                if response.status_code < 400:
                    logger.info(
                        "Offer applier accepted rollout",
                        extra={"offer": payload, "status_code": response.status_code},
                    )
                    return
                if response.status_code < 500:
                    raise OfferApplierError(
                        f"Offer applier rejected rollout with {response.status_code}: "
                        f"{response.text}"
                    )
                last_error = f"server error {response.status_code}"

            if attempt == self.MAX_RETRIES - 1:
                break
            delay = self.RETRY_DELAY * (2**attempt)
            logger.warning(
                "Offer applier call failed (%s), retrying in %ss (attempt %d/%d)",
                last_error,
                delay,
                attempt + 1,
                self.MAX_RETRIES,
            )
            await asyncio.sleep(delay)

        raise OfferApplierError(
            f"Offer applier unreachable after {self.MAX_RETRIES} attempts: {last_error}"
        )


def build_offer_applier(settings: Settings | None = None) -> OfferApplier:
    """Webhook sink when a URL is configured, log-only sink otherwise."""
    settings = settings or get_settings()
    if settings.offer_applier_url is not None:
        return WebhookOfferApplier(str(settings.offer_applier_url), settings=settings)
    return LoggingOfferApplier()
