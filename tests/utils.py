"""
Test utilities and helper functions for Guardline testing.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from jose import jwt
from starlette.websockets import WebSocketDisconnect

from guardline.services.emergency.notifications import NotificationGateway, RecipientSelector


TEST_SECRET = "test-secret-key"


class FakeClock:
    """Controllable clock for stores and sessions"""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class RecordingGateway(NotificationGateway):
    """Gateway that keeps every notification it is asked to deliver"""

    def __init__(self):
        self.sent: List[Tuple[RecipientSelector, Dict[str, Any]]] = []

    async def notify(self, selector: RecipientSelector, payload: Dict[str, Any]) -> None:
        self.sent.append((selector, payload))

    def events(self) -> List[str]:
        return [payload["event"] for _, payload in self.sent]


class MockWebSocket:
    """Mock WebSocket for testing"""

    def __init__(self, fail: bool = False, receive_error: Optional[Exception] = None):
        self.messages_sent: List[str] = []
        self.accept_called = False
        self.fail = fail
        self.receive_error = receive_error

    async def accept(self):
        self.accept_called = True

    async def send_text(self, message: str):
        if self.fail:
            raise RuntimeError("connection reset")
        self.messages_sent.append(message)

    async def receive_text(self) -> str:
        raise self.receive_error or WebSocketDisconnect(code=1000)


def make_token(user_id: str, role: str = "citizen", secret: str = TEST_SECRET, **claims) -> str:
    """Issue a bearer token the API accepts"""
    payload = {"sub": user_id, "role": role}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id: str, role: str = "citizen") -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}
