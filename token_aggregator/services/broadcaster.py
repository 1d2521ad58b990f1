"""
Realtime diff broadcaster.
Periodically recomputes the top token listing, compares it with the previous
snapshot and pushes price moves and volume spikes to connected clients.
"""

import asyncio
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..api.schemas import PageResult, QueryOptions, RealtimeEvent, SortField, SortOrder, Token
from ..core.config import Settings, settings as default_settings
from ..core.logging_config import create_logger
from ..providers.base import now_ms
from .aggregation import AggregationService
from .connection_manager import ConnectionManager

logger = create_logger(__name__)


class TickResult(BaseModel):
    """What one tick detected and announced."""
    price_updates: List[Token] = Field(default_factory=list)
    volume_spikes: List[Token] = Field(default_factory=list)
    compared: int = Field(0, description="Tokens present in both snapshots")
    snapshot_size: int = Field(0, description="Tokens in the new snapshot")


def token_topic(address: str) -> str:
    return f"token:{address.lower()}"


def price_change_pct(previous: Token, current: Token) -> Optional[float]:
    """Absolute price move in percent, or None when the previous price is zero."""
    if not previous.price_sol:
        return None
    return abs(current.price_sol - previous.price_sol) / previous.price_sol * 100


def volume_change_pct(previous: Token, current: Token) -> Optional[float]:
    """Signed volume change in percent, or None when the previous volume is zero."""
    if not previous.volume_sol:
        return None
    return (current.volume_sol - previous.volume_sol) / previous.volume_sol * 100


def make_event(event_type: str, data: Any) -> RealtimeEvent:
    return RealtimeEvent(type=event_type, data=data, timestamp=now_ms())


class TokenBroadcaster:
    """
    Runs the periodic snapshot-diff loop and answers per-connection requests.

    Ticks run back to back on a fixed delay: the next tick is scheduled
    ``broadcast_interval`` seconds after the previous one finished, so two
    ticks never overlap.
    """

    def __init__(
        self,
        aggregation: AggregationService,
        manager: ConnectionManager,
        settings: Optional[Settings] = None
    ):
        self.aggregation = aggregation
        self.manager = manager
        self.settings = settings or default_settings
        self.previous_tokens: Dict[str, Token] = {}
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None

    # Lifecycle

    def start(self) -> None:
        """Start the tick loop on the running event loop."""
        if self.is_running():
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_update_loop())
        logger.info("Realtime update loop started", extra={
            "interval": self.settings.broadcast_interval
        })

    async def stop(self) -> None:
        """Halt the tick loop and wait for it to exit."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=self.settings.broadcast_interval + 5)
            except asyncio.TimeoutError:
                logger.warning("Realtime update loop did not stop in time, cancelling")
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Realtime update loop stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_update_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("Error checking for updates", extra={"error": str(e)})

            # Wait for next tick
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.settings.broadcast_interval
                )
                break  # Shutdown event was set
            except asyncio.TimeoutError:
                continue

    # Diffing

    async def tick(self) -> TickResult:
        """Refresh the snapshot, announce significant changes and retain the new snapshot."""
        await self.aggregation.invalidate()
        page = await self.aggregation.aggregate(QueryOptions(
            limit=self.settings.broadcast_top_n,
            sort_by=SortField.VOLUME,
            sort_order=SortOrder.DESC
        ))

        current_tokens = {token.token_address.lower(): token for token in page.tokens}
        result = TickResult(snapshot_size=len(current_tokens))

        for address, token in current_tokens.items():
            previous = self.previous_tokens.get(address)
            if previous is None:
                continue
            result.compared += 1

            price_delta = price_change_pct(previous, token)
            if price_delta is not None and price_delta > self.settings.price_change_threshold:
                result.price_updates.append(token)

            volume_delta = volume_change_pct(previous, token)
            if volume_delta is not None and volume_delta > self.settings.volume_spike_threshold:
                result.volume_spikes.append(token)

            await self.manager.broadcast_to_topic(
                token_topic(address),
                "token_update",
                make_event("price_update", token)
            )

        if result.price_updates:
            await self.manager.broadcast("price_updates", make_event("price_update", result.price_updates))
            logger.info("Broadcasted price updates", extra={"count": len(result.price_updates)})

        if result.volume_spikes:
            await self.manager.broadcast("volume_spikes", make_event("volume_spike", result.volume_spikes))
            logger.info("Broadcasted volume spikes", extra={"count": len(result.volume_spikes)})

        self.previous_tokens = current_tokens
        return result

    # Per-connection handling

    async def handle_connect(self, connection_id: str) -> None:
        await self.send_initial_data(connection_id)

    def handle_disconnect(self, connection_id: str) -> None:
        self.manager.disconnect(connection_id)

    async def handle_event(self, connection_id: str, event: str, data: Any = None) -> None:
        """Dispatch one inbound client event."""
        if event == "set_filters":
            await self._handle_set_filters(connection_id, data)
        elif event == "subscribe_token":
            address = self._require_address(data)
            if address is None:
                await self.send_error(connection_id, "subscribe_token requires a token address")
                return
            self.manager.subscribe(connection_id, token_topic(address))
        elif event == "unsubscribe_token":
            address = self._require_address(data)
            if address is None:
                await self.send_error(connection_id, "unsubscribe_token requires a token address")
                return
            self.manager.unsubscribe(connection_id, token_topic(address))
        elif event == "refresh":
            logger.info("Client requested refresh", extra={"connection_id": connection_id})
            await self.aggregation.invalidate()
            await self.send_initial_data(connection_id)
        else:
            logger.debug("Unknown client event", extra={"connection_id": connection_id, "event": event})
            await self.send_error(connection_id, f"Unknown event: {event}")

    async def send_initial_data(self, connection_id: str) -> None:
        try:
            page = await self.aggregation.aggregate(QueryOptions(
                limit=self.settings.initial_data_limit,
                sort_by=SortField.VOLUME,
                sort_order=SortOrder.DESC
            ))
        except Exception as e:
            logger.error("Error sending initial data", extra={"connection_id": connection_id, "error": str(e)})
            await self.send_error(connection_id, "Failed to fetch initial data")
            return

        await self.manager.send_personal(connection_id, "initial_data", page)
        logger.debug("Sent initial data", extra={"connection_id": connection_id, "tokens": len(page.tokens)})

    async def send_filtered_data(self, connection_id: str, options: QueryOptions) -> Optional[PageResult]:
        try:
            page = await self.aggregation.aggregate(options)
        except Exception as e:
            logger.error("Error sending filtered data", extra={"connection_id": connection_id, "error": str(e)})
            await self.send_error(connection_id, "Failed to fetch filtered data")
            return None

        await self.manager.send_personal(connection_id, "filtered_data", page)
        return page

    async def send_error(self, connection_id: str, message: str) -> None:
        await self.manager.send_personal(connection_id, "error", {"message": message})

    async def _handle_set_filters(self, connection_id: str, data: Any) -> None:
        try:
            options = QueryOptions(**(data or {}))
        except (ValidationError, TypeError) as e:
            logger.debug("Rejected client filters", extra={"connection_id": connection_id, "error": str(e)})
            await self.send_error(connection_id, "Invalid filters")
            return

        self.manager.set_filters(connection_id, options)
        await self.send_filtered_data(connection_id, options)

    @staticmethod
    def _require_address(data: Any) -> Optional[str]:
        if isinstance(data, dict):
            data = data.get("address")
        if isinstance(data, str) and data.strip():
            return data.strip()
        return None

    # Passthroughs

    async def broadcast(self, event: str, data: Any) -> int:
        delivered = await self.manager.broadcast(event, data)
        logger.debug("Broadcasted event", extra={"event": event, "delivered": delivered})
        return delivered

    def connected_clients(self) -> int:
        return self.manager.connection_count()
