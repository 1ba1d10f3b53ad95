"""
Notification Gateway

Boundary through which the coordinator tells users and responders about SOS
events. Delivery is fire-and-forget: the dispatcher schedules each
notification as a background task and a failed delivery is logged, never
surfaced to the caller.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from fastapi import WebSocket

from ...core.logging import get_structured_logger
from ...models.emergency import Role


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecipientSelector:
    """Targets either a single user or every user holding one of a set of roles"""
    user_id: Optional[str] = None
    roles: FrozenSet[Role] = field(default_factory=frozenset)

    @classmethod
    def for_user(cls, user_id: str) -> 'RecipientSelector':
        return cls(user_id=user_id)

    @classmethod
    def for_roles(cls, roles: Iterable[Role]) -> 'RecipientSelector':
        return cls(roles=frozenset(roles))

    def matches(self, user_id: str, role: Optional[Role]) -> bool:
        if self.user_id is not None:
            return user_id == self.user_id
        return role in self.roles

    def describe(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return "roles:" + ",".join(sorted(role.value for role in self.roles))


class NotificationGateway(ABC):
    """Delivers a payload to the recipients a selector names"""

    @abstractmethod
    async def notify(self, selector: RecipientSelector, payload: Dict[str, Any]) -> None:
        pass


class LoggingNotificationGateway(NotificationGateway):
    """Records notifications as structured log events; used when no push channel is configured"""

    def __init__(self):
        self.slog = get_structured_logger("notifications")

    async def notify(self, selector: RecipientSelector, payload: Dict[str, Any]) -> None:
        self.slog.info("notification", recipients=selector.describe(),
                       event=payload.get("event"), payload=payload)


class WebSocketManager:
    """Manages WebSocket connections for real-time notifications"""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_identity: Dict[str, Tuple[str, Optional[Role]]] = {}

    async def connect(self, websocket: WebSocket, user_id: str, role: Optional[Role]) -> str:
        """Accept a WebSocket connection and return its client id"""
        await websocket.accept()
        client_id = str(uuid.uuid4())
        self.active_connections[client_id] = websocket
        self.connection_identity[client_id] = (user_id, role)
        logger.info(f"WebSocket client {client_id} connected for user {user_id}")
        return client_id

    def disconnect(self, client_id: str):
        """Remove a WebSocket connection"""
        self.active_connections.pop(client_id, None)
        self.connection_identity.pop(client_id, None)
        logger.info(f"WebSocket client {client_id} disconnected")

    async def send(self, selector: RecipientSelector, message: str) -> int:
        """
        Send a message to every connected client the selector matches

        Returns:
            Number of clients the message was delivered to
        """
        delivered = 0
        disconnected_clients = []

        for client_id, websocket in list(self.active_connections.items()):
            user_id, role = self.connection_identity.get(client_id, (None, None))
            if not selector.matches(user_id, role):
                continue

            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending notification to {client_id}: {e}")
                disconnected_clients.append(client_id)

        # Clean up disconnected clients
        for client_id in disconnected_clients:
            self.disconnect(client_id)

        return delivered

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)


class WebSocketNotificationGateway(NotificationGateway):
    """Pushes notifications as JSON frames to connected WebSocket clients"""

    def __init__(self, manager: WebSocketManager):
        self.manager = manager

    async def notify(self, selector: RecipientSelector, payload: Dict[str, Any]) -> None:
        message = json.dumps(payload, default=str)
        delivered = await self.manager.send(selector, message)
        logger.debug(f"Notification {payload.get('event')} delivered to {delivered} "
                     f"client(s) for {selector.describe()}")


class NotificationDispatcher:
    """Schedules gateway deliveries as background tasks"""

    def __init__(self, gateway: NotificationGateway):
        self.gateway = gateway
        self.slog = get_structured_logger("notifications")
        self._pending: Set[asyncio.Task] = set()

    def dispatch(self, selector: RecipientSelector, payload: Dict[str, Any]) -> asyncio.Task:
        """Schedule a notification and return immediately"""
        task = asyncio.create_task(self._deliver(selector, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, selector: RecipientSelector, payload: Dict[str, Any]) -> None:
        try:
            await self.gateway.notify(selector, payload)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Notification {payload.get('event')} to "
                             f"{selector.describe()} failed")
            self.slog.error("notification_failed", event=payload.get("event"),
                            recipients=selector.describe())

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding deliveries"""
        if not self._pending:
            return
        done, not_done = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in not_done:
            logger.warning("Cancelling notification still pending at shutdown")
            task.cancel()
