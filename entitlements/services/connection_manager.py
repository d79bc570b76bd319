"""
Provider Connection Manager - Connection lifecycle with capped exponential backoff.

State machine:
    Disconnected --connect()--> Connecting(1) --success--> Ready
    Connecting(n) --failure--> Connecting(n+1) after reconnect_delay(n), while n < max attempts
    Connecting(max) --failure--> PermanentlyFailed (unless a purchase flow is in progress)
    Ready --lost--> Connecting(1) after reconnect_delay(1)
"""

from collections.abc import Callable

from structlog import get_logger

from entitlements.config import get_settings
from entitlements.models.domain import ConnectionPhase, ConnectionState
from entitlements.observability.metrics import metrics
from entitlements.services.billing_provider import BillingProvider
from entitlements.services.observable import ObservableValue
from entitlements.services.scheduling import DelayedTask, Timer

logger = get_logger(__name__)


def reconnect_delay(attempt: int, base_delay: float = 1.0, max_exponent: int = 6) -> float:
    """Delay before the attempt that follows failed attempt `attempt` (1-based)."""
    exponent = min(max(attempt, 1), max_exponent) - 1
    return base_delay * (2**exponent)


class ConnectionManager:
    """Owns the provider connection and its reconnection timer."""

    def __init__(
        self,
        provider: BillingProvider,
        purchase_in_progress: Callable[[], bool] = lambda: False,
        timer: Timer | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_exponent: int | None = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider
        self.purchase_in_progress = purchase_in_progress
        self.timer: Timer = timer or DelayedTask("provider-reconnect")
        self.max_attempts = max_attempts or settings.max_connection_attempts
        self.base_delay = base_delay if base_delay is not None else settings.reconnect_base_delay_seconds
        self.max_exponent = max_exponent or settings.reconnect_max_exponent

        self.state: ObservableValue[ConnectionState] = ObservableValue(
            ConnectionState.disconnected()
        )
        self._attempts = 0
        self._connecting = False
        self._closed = False
        self._ready_callbacks: list[Callable[[], None]] = []
        self._lost_callbacks: list[Callable[[], None]] = []
        self._failed_callbacks: list[Callable[[], None]] = []

    @property
    def attempts(self) -> int:
        return self._attempts

    def on_ready(self, callback: Callable[[], None]) -> None:
        self._ready_callbacks.append(callback)

    def on_lost(self, callback: Callable[[], None]) -> None:
        self._lost_callbacks.append(callback)

    def on_permanently_failed(self, callback: Callable[[], None]) -> None:
        self._failed_callbacks.append(callback)

    def is_ready(self) -> bool:
        return self.state.value.phase == ConnectionPhase.READY and self.provider.is_ready()

    def _set_state(self, state: ConnectionState) -> None:
        self.state.set(state)
        metrics.record_connection_phase(state.phase)

    def _fire(self, callbacks: list[Callable[[], None]], event: str) -> None:
        for callback in list(callbacks):
            try:
                callback()
            except Exception as exc:
                logger.error("connection_callback_failed", event=event, error=str(exc))

    async def connect(self) -> None:
        """Open the connection. Calls made while an attempt is running are coalesced."""
        if self._closed or self._connecting:
            return

        if self.provider.is_ready():
            self.timer.cancel()
            self._attempts = 0
            self._set_state(ConnectionState.ready())
            self._fire(self._ready_callbacks, "ready")
            return

        self.timer.cancel()
        self._attempts += 1
        attempt = self._attempts
        self._set_state(ConnectionState.connecting(attempt))
        logger.info("provider_connection_attempt", attempt=attempt)

        self._connecting = True
        try:
            result = await self.provider.start_connection(self._handle_disconnected)
        finally:
            self._connecting = False

        if self._closed:
            return

        metrics.connection_attempts_total.labels(success=str(result.ok)).inc()

        if result.ok:
            self._attempts = 0
            self._set_state(ConnectionState.ready())
            logger.info("provider_connection_ready", attempt=attempt)
            self._fire(self._ready_callbacks, "ready")
            return

        logger.warning(
            "provider_connection_failed",
            attempt=attempt,
            response_code=result.response_code.name,
            debug_message=result.debug_message,
        )
        self.schedule_reconnect()

    def schedule_reconnect(self) -> None:
        """
        Schedule the next attempt, replacing any pending one.

        Past the attempt cap the connection is abandoned unless a purchase
        flow is in progress.
        """
        if self._closed:
            return

        if self.state.value.phase == ConnectionPhase.READY:
            # A previously ready connection starts counting again
            self._attempts = 0

        if self._attempts >= self.max_attempts and not self.purchase_in_progress():
            self.timer.cancel()
            self._set_state(ConnectionState.permanently_failed())
            logger.error("provider_connection_permanently_failed", attempts=self._attempts)
            self._fire(self._failed_callbacks, "permanently_failed")
            return

        delay = reconnect_delay(self._attempts, self.base_delay, self.max_exponent)
        self._set_state(ConnectionState.disconnected())
        logger.info("provider_reconnect_scheduled", attempt=self._attempts + 1, delay_seconds=delay)
        self.timer.schedule(delay, self.connect)

    def _handle_disconnected(self) -> None:
        """Provider callback: an established connection was lost."""
        if self._closed:
            return
        logger.warning("provider_connection_lost")
        self._attempts = 0
        self._set_state(ConnectionState.disconnected())
        self._fire(self._lost_callbacks, "lost")
        self.schedule_reconnect()

    async def retry(self) -> None:
        """Manual retry: reset the counter and connect immediately."""
        logger.info("provider_connection_manual_retry")
        self.timer.cancel()
        self._attempts = 0
        await self.connect()

    async def close(self) -> None:
        self._closed = True
        self.timer.cancel()
        await self.provider.end_connection()
        self.state.set(ConnectionState.disconnected())
