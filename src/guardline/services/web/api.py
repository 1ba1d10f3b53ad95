"""
REST API for Guardline

FastAPI application exposing the emergency coordinator over HTTP and pushing
notifications to WebSocket clients. Callers authenticate with a bearer JWT
carrying ``sub`` (user id) and ``role``; tokens are issued elsewhere.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ...models.emergency import Actor
from ..emergency.coordinator import EmergencyCoordinator
from ..emergency.errors import ConflictError, EmergencyError
from ..emergency.notifications import WebSocketManager


logger = logging.getLogger(__name__)


# Pydantic models for API
class TriggerSosRequest(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    message: Optional[str] = None


class ResolveSosRequest(BaseModel):
    notes: Optional[str] = None


class LocationUpdateRequest(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    battery_level: Optional[float] = Field(default=None, alias="batteryLevel")

    model_config = {"populate_by_name": True}


class StartSharingRequest(BaseModel):
    duration_minutes: Optional[float] = Field(default=None, alias="durationMinutes")

    model_config = {"populate_by_name": True}


_STATUS_KINDS = {
    400: "validation",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


def success(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    """Successful response envelope"""
    return {"success": True, "message": message, "data": data}


def failure(kind: str, message: str, status_code: int,
            data: Any = None, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    """Failed response envelope"""
    content = {"success": False, "error": {"kind": kind, "message": message}}
    if data is not None:
        content["data"] = data
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _pagination(page: int, limit: Optional[int], total: int) -> Dict[str, int]:
    page_size = limit or 50
    return {
        "page": page,
        "limit": page_size,
        "total": total,
        "pages": (total + page_size - 1) // page_size,
    }


class EmergencyApi:
    """
    HTTP surface of the emergency subsystem
    """

    def __init__(self, coordinator: EmergencyCoordinator,
                 websocket_manager: Optional[WebSocketManager] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(__name__)
        self.coordinator = coordinator
        self.websocket_manager = websocket_manager or WebSocketManager()
        self.config = config or {}

        self.secret_key = self.config.get("secret_key", "change-me-in-production")
        self.algorithm = self.config.get("algorithm", "HS256")
        self.api_prefix = self.config.get("api_prefix", "/api/v1")

        self.app = FastAPI(
            title="Guardline Emergency API",
            description="SOS alerts and live location sharing",
            version="1.0.0",
            debug=self.config.get("debug", False)
        )

        # Security
        self.security = HTTPBearer(auto_error=False)

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

        self.logger.info("Emergency API initialized")

    def _setup_middleware(self):
        """Setup FastAPI middleware"""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.get("cors_origins", ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_exception_handlers(self):
        """Map errors onto the response envelope"""

        @self.app.exception_handler(EmergencyError)
        async def emergency_error_handler(request: Request, exc: EmergencyError):
            data = None
            if isinstance(exc, ConflictError) and exc.existing is not None:
                data = exc.existing.to_dict()
            if exc.status_code >= 500:
                self.logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
            return failure(exc.kind, exc.message, exc.status_code, data=data)

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            errors = exc.errors()
            if errors:
                first = errors[0]
                location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
                message = f"{location}: {first.get('msg')}" if location else first.get("msg")
            else:
                message = "Invalid request"
            return failure("validation", message, 400)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_error_handler(request: Request, exc: StarletteHTTPException):
            kind = _STATUS_KINDS.get(exc.status_code, "error")
            return failure(kind, str(exc.detail), exc.status_code,
                           headers=getattr(exc, "headers", None))

        @self.app.exception_handler(Exception)
        async def unhandled_error_handler(request: Request, exc: Exception):
            self.logger.exception(f"Unhandled error on {request.method} {request.url.path}")
            return failure("internal", "Internal server error", 500)

    def decode_token(self, token: str) -> Actor:
        """Resolve a bearer token to the acting identity"""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            self.logger.debug(f"JWT decode error: {e}")
            raise HTTPException(status_code=401, detail="Invalid authentication credentials",
                                headers={"WWW-Authenticate": "Bearer"})

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid authentication credentials",
                                headers={"WWW-Authenticate": "Bearer"})
        return Actor.of(str(user_id), payload.get("role"))

    async def serve_websocket(self, websocket: WebSocket, actor: Actor) -> None:
        """Hold a notification connection open until the client goes away"""
        client_id = await self.websocket_manager.connect(websocket, actor.user_id, actor.role)
        try:
            while True:
                # Clients only listen; inbound frames are keepalives
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            self.websocket_manager.disconnect(client_id)

    def _setup_routes(self):
        """Setup API routes"""
        coordinator = self.coordinator
        prefix = self.api_prefix

        async def get_actor(
            credentials: Optional[HTTPAuthorizationCredentials] = Depends(self.security)
        ) -> Actor:
            if credentials is None:
                raise HTTPException(status_code=401, detail="Not authenticated",
                                    headers={"WWW-Authenticate": "Bearer"})
            return self.decode_token(credentials.credentials)

        # SOS routes
        @self.app.post(f"{prefix}/sos", status_code=201)
        async def trigger_sos(request: Optional[TriggerSosRequest] = None,
                              actor: Actor = Depends(get_actor)):
            request = request or TriggerSosRequest()
            alert = await coordinator.trigger_sos(
                actor, request.latitude, request.longitude, request.message
            )
            return success(alert.to_dict(), "SOS alert triggered")

        @self.app.delete(f"{prefix}/sos")
        async def cancel_sos(actor: Actor = Depends(get_actor)):
            alert = await coordinator.cancel_sos(actor)
            return success(alert.to_dict(), "SOS alert cancelled")

        @self.app.get(f"{prefix}/sos/status")
        async def sos_status(actor: Actor = Depends(get_actor)):
            alert = await coordinator.get_sos_status(actor)
            if alert is None:
                return success(None, "No active SOS alert")
            return success(alert.to_dict(), "Active SOS alert")

        @self.app.get(f"{prefix}/sos/history")
        async def sos_history(limit: Optional[int] = Query(default=None),
                              actor: Actor = Depends(get_actor)):
            alerts = await coordinator.sos_history(actor, limit)
            return success([alert.to_dict() for alert in alerts], "SOS history")

        @self.app.get(f"{prefix}/sos/active")
        async def active_sos(actor: Actor = Depends(get_actor)):
            alerts = await coordinator.list_active_sos(actor)
            return success([alert.to_responder_dict() for alert in alerts],
                           f"{len(alerts)} active SOS alert(s)")

        @self.app.get(f"{prefix}/sos/stats")
        async def sos_stats(actor: Actor = Depends(get_actor)):
            return success(await coordinator.sos_stats(actor), "SOS statistics")

        @self.app.post(f"{prefix}/sos/{{alert_id}}/resolve")
        async def resolve_sos(alert_id: str, request: Optional[ResolveSosRequest] = None,
                              actor: Actor = Depends(get_actor)):
            notes = request.notes if request else None
            alert = await coordinator.resolve_sos(actor, alert_id, notes)
            return success(alert.to_responder_dict(), "SOS alert resolved")

        # Location routes
        @self.app.post(f"{prefix}/locations/update", status_code=201)
        async def update_location(request: LocationUpdateRequest,
                                  actor: Actor = Depends(get_actor)):
            point = await coordinator.update_location(
                actor, request.latitude, request.longitude,
                accuracy=request.accuracy, altitude=request.altitude, speed=request.speed,
                heading=request.heading, battery_level=request.battery_level
            )
            return success(point.to_dict(), "Location updated")

        @self.app.get(f"{prefix}/locations/my")
        async def my_locations(start_date: Optional[datetime] = Query(default=None, alias="startDate"),
                               end_date: Optional[datetime] = Query(default=None, alias="endDate"),
                               limit: Optional[int] = Query(default=None),
                               page: int = Query(default=1),
                               actor: Actor = Depends(get_actor)):
            points, total = await coordinator.location_history(
                actor, _aware(start_date), _aware(end_date), limit, page
            )
            return success({
                "locations": [point.to_dict() for point in points],
                "pagination": _pagination(page, limit, total),
            }, "Location history")

        @self.app.get(f"{prefix}/locations/my/latest")
        async def my_latest_location(actor: Actor = Depends(get_actor)):
            point = await coordinator.latest_location(actor)
            return success(point.to_dict(), "Latest location")

        @self.app.post(f"{prefix}/locations/share/start")
        async def start_sharing(request: Optional[StartSharingRequest] = None,
                                actor: Actor = Depends(get_actor)):
            duration = request.duration_minutes if request else None
            session = await coordinator.start_sharing(actor, duration)
            status = await coordinator.sharing_status(actor)
            return success(status.to_dict(), f"Location sharing active until "
                                             f"{session.expires_at.isoformat()}")

        @self.app.post(f"{prefix}/locations/share/stop")
        async def stop_sharing(actor: Actor = Depends(get_actor)):
            session = await coordinator.stop_sharing(actor)
            if session is None:
                return success(None, "Location sharing was not active")
            return success(session.to_dict(session.stopped_at), "Location sharing stopped")

        @self.app.get(f"{prefix}/locations/share/status")
        async def sharing_status(actor: Actor = Depends(get_actor)):
            status = await coordinator.sharing_status(actor)
            return success(status.to_dict(), "Sharing status")

        @self.app.get(f"{prefix}/locations/riders")
        async def riders(latitude: Optional[float] = Query(default=None),
                         longitude: Optional[float] = Query(default=None),
                         radius_m: Optional[float] = Query(default=None, alias="radius"),
                         limit: Optional[int] = Query(default=None),
                         actor: Actor = Depends(get_actor)):
            if latitude is None and longitude is None:
                points = await coordinator.active_users(actor, limit)
                data: List[Dict[str, Any]] = [point.to_dict() for point in points]
            else:
                nearby = await coordinator.nearby_users(actor, latitude, longitude, radius_m, limit)
                data = [user.to_dict() for user in nearby]
            return success(data, f"{len(data)} rider(s)")

        @self.app.get(f"{prefix}/locations/riders/{{user_id}}")
        async def rider_location(user_id: str, actor: Actor = Depends(get_actor)):
            point = await coordinator.shared_location(actor, user_id)
            return success(point.to_dict(), "Rider location")

        @self.app.get(f"{prefix}/locations/riders/{{user_id}}/history")
        async def rider_history(user_id: str,
                                start_date: Optional[datetime] = Query(default=None, alias="startDate"),
                                end_date: Optional[datetime] = Query(default=None, alias="endDate"),
                                limit: Optional[int] = Query(default=None),
                                page: int = Query(default=1),
                                actor: Actor = Depends(get_actor)):
            points, total = await coordinator.rider_location_history(
                actor, user_id, _aware(start_date), _aware(end_date), limit, page
            )
            return success({
                "user_id": user_id,
                "locations": [point.to_dict() for point in points],
                "pagination": _pagination(page, limit, total),
            }, "Rider location history")

        @self.app.get(f"{prefix}/locations/stats")
        async def sharing_stats(actor: Actor = Depends(get_actor)):
            return success(await coordinator.sharing_stats(actor), "Sharing statistics")

        # Notifications
        @self.app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
            try:
                actor = self.decode_token(token or "")
            except HTTPException:
                await websocket.close(code=1008)
                return

            await self.serve_websocket(websocket, actor)

        # Health check
        @self.app.get("/health")
        async def health_check():
            return {
                "status": "healthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "websocket_clients": self.websocket_manager.connection_count,
                "pending_notifications": coordinator.dispatcher.pending,
            }


def create_app(coordinator: EmergencyCoordinator,
               websocket_manager: Optional[WebSocketManager] = None,
               config: Optional[Dict[str, Any]] = None) -> FastAPI:
    """Build the FastAPI application for a coordinator"""
    return EmergencyApi(coordinator, websocket_manager, config).app
