"""Confirmation of amendment decisions back to the originating channel.

Confirmations are sent in background tasks after the booking is saved.
Each send is retried with bounded exponential backoff; a final failure is
logged and never reverses the amendment decision.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from innsync.config import settings
from innsync.errors import ChannelConfirmationError

logger = structlog.get_logger(__name__)


class ChannelConfirmation(BaseModel):
    """A decision on an amendment, as reported to the channel."""

    channel: str
    booking_id: str
    amendment_id: str
    channel_booking_id: str | None = None
    channel_amendment_id: str | None = None
    decision: str = Field(..., description="approved, rejected or superseded")
    confirmation_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_decision(
        cls,
        *,
        channel: str,
        booking_id: str,
        amendment_id: str,
        decision: str,
        channel_booking_id: str | None = None,
        channel_amendment_id: str | None = None,
    ) -> "ChannelConfirmation":
        """Build a confirmation with the standard ``CNF-<amendmentId>`` ID."""
        return cls(
            channel=channel,
            booking_id=booking_id,
            amendment_id=amendment_id,
            channel_booking_id=channel_booking_id,
            channel_amendment_id=channel_amendment_id,
            decision=decision,
            confirmation_id=f"CNF-{amendment_id}",
        )

    def to_wire(self) -> dict[str, Any]:
        """Body sent to the channel."""
        return {
            "channelBookingId": self.channel_booking_id,
            "channelAmendmentId": self.channel_amendment_id,
            "decision": self.decision,
            "confirmationId": self.confirmation_id,
            "timestamp": self.timestamp.isoformat(),
        }


class ChannelClient:
    """Abstract base class for a channel's confirmation API."""

    async def send_amendment_confirmation(self, confirmation: ChannelConfirmation) -> None:
        """Send a confirmation.

        Raises:
            ChannelConfirmationError: If the channel did not accept it.
        """
        raise NotImplementedError


class HttpChannelClient(ChannelClient):
    """Posts confirmations as JSON to a channel endpoint."""

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the client.

        Args:
            url: Channel confirmation URL.
            client: Shared HTTP client (a short-lived one is used otherwise).
            headers: Extra headers, e.g. channel credentials.
            timeout: Request timeout in seconds.
        """
        self.url = url
        self._client = client
        self._headers = headers or {}
        self._timeout = timeout

    async def _post(self, client: httpx.AsyncClient, confirmation: ChannelConfirmation) -> None:
        response = await client.post(
            self.url,
            json=confirmation.to_wire(),
            headers=self._headers,
            timeout=self._timeout,
        )
        response.raise_for_status()

    async def send_amendment_confirmation(self, confirmation: ChannelConfirmation) -> None:
        try:
            if self._client is not None:
                await self._post(self._client, confirmation)
            else:
                async with httpx.AsyncClient() as client:
                    await self._post(client, confirmation)
        except httpx.HTTPError as e:
            raise ChannelConfirmationError(
                f"Channel confirmation failed: {e}",
                channel=confirmation.channel,
                details={"confirmation_id": confirmation.confirmation_id},
            ) from e


class ChannelConfirmer:
    """Sends confirmations through registered channel clients.

    Channels without a registered client are skipped with a log entry.
    """

    def __init__(
        self,
        clients: dict[str, ChannelClient] | None = None,
        *,
        max_attempts: int | None = None,
        wait_multiplier: float = 1.0,
        min_wait_seconds: float = 0.5,
        max_wait_seconds: float = 10.0,
    ) -> None:
        """Initialize the confirmer.

        Args:
            clients: Channel name to client.
            max_attempts: Attempts per confirmation (including the first).
            wait_multiplier: Exponential backoff multiplier.
            min_wait_seconds: Minimum wait between attempts.
            max_wait_seconds: Maximum wait between attempts.
        """
        self._clients: dict[str, ChannelClient] = dict(clients or {})
        self._max_attempts = max_attempts or settings.CHANNEL_CONFIRMATION_MAX_ATTEMPTS
        self._wait_multiplier = wait_multiplier
        self._min_wait = min_wait_seconds
        self._max_wait = max_wait_seconds
        self._background_tasks: set[asyncio.Task[bool]] = set()
        self._logger = logger.bind(component="channel_confirmer")

    def register(self, channel: str, client: ChannelClient) -> None:
        """Register the client for a channel."""
        self._clients[channel] = client

    def unregister(self, channel: str) -> None:
        """Remove a channel's client."""
        self._clients.pop(channel, None)

    def get_client(self, channel: str) -> ChannelClient | None:
        """Client registered for a channel, if any."""
        return self._clients.get(channel)

    async def confirm(self, confirmation: ChannelConfirmation) -> bool:
        """Send a confirmation with bounded retries.

        Returns:
            True if the channel accepted it; False if no client is
            registered or every attempt failed.
        """
        client = self._clients.get(confirmation.channel)
        if client is None:
            self._logger.info(
                "channel_client_missing",
                channel=confirmation.channel,
                confirmation_id=confirmation.confirmation_id,
            )
            return False

        attempt = 0
        try:
            async for attempt_context in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(
                    multiplier=self._wait_multiplier,
                    min=self._min_wait,
                    max=self._max_wait,
                ),
                retry=retry_if_exception_type(ChannelConfirmationError),
            ):
                with attempt_context:
                    attempt += 1
                    if attempt > 1:
                        self._logger.info(
                            "channel_confirmation_retry",
                            channel=confirmation.channel,
                            confirmation_id=confirmation.confirmation_id,
                            attempt=attempt,
                            max_attempts=self._max_attempts,
                        )
                    await client.send_amendment_confirmation(confirmation)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            self._logger.error(
                "channel_confirmation_failed",
                channel=confirmation.channel,
                confirmation_id=confirmation.confirmation_id,
                decision=confirmation.decision,
                attempts=attempt,
                error=str(last_error),
            )
            return False
        except Exception as e:
            self._logger.error(
                "channel_confirmation_error",
                channel=confirmation.channel,
                confirmation_id=confirmation.confirmation_id,
                error=str(e),
                exc_info=True,
            )
            return False

        self._logger.info(
            "channel_confirmation_sent",
            channel=confirmation.channel,
            confirmation_id=confirmation.confirmation_id,
            decision=confirmation.decision,
            attempts=attempt,
        )
        return True

    def schedule(self, confirmation: ChannelConfirmation) -> asyncio.Task[bool]:
        """Send a confirmation in the background."""
        task = asyncio.create_task(self.confirm(confirmation))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    @property
    def pending(self) -> int:
        """Number of confirmations still being sent."""
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for all background confirmations to finish."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_confirmations",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
