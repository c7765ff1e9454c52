"""FastAPI application exposing users, classifications and operating hours."""
from __future__ import annotations

import logging
import re
import sqlite3
import time
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import __version__
from .accounts import MIN_PASSWORD_LENGTH, AccountService
from .config import Settings, load_settings
from .database import Database
from .errors import InternalError, KartError, ValidationError
from .models import Category, Classification, OperatingHour, Page, Role, User
from .operating_hours import MAX_LABEL_LENGTH, OperatingHoursRegistry, parse_group
from .ranking import MAX_PAGE_SIZE, ClassificationFilters, RankingEngine
from .ratelimit import RateLimitMiddleware
from .reconcile import (
    ClassificationItem,
    ClassificationReconcileResult,
    ItemError,
    OperatingHourItem,
    OperatingHoursReconcileResult,
    ReconciliationService,
)
from .security import BearerAuth, PasswordHasher, TokenService, require_roles

logger = logging.getLogger("kartapi.api")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _validate_email(value: str) -> str:
    stripped = value.strip()
    if not _EMAIL_PATTERN.match(stripped):
        raise ValueError("email must be a valid email address")
    return stripped.lower()


Email = Annotated[str, AfterValidator(_validate_email)]


# ----------------------------------------------------------------------
# Request payloads
# ----------------------------------------------------------------------
class LoginRequest(CamelModel):
    email: Email
    password: str = Field(..., min_length=1)


class CreateUserRequest(CamelModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: Email
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    role: Role = Role.USER


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    email: Optional[Email] = None
    password: Optional[str] = Field(default=None, min_length=MIN_PASSWORD_LENGTH)


class UpdateUserRequest(UpdateProfileRequest):
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class CreateClassificationRequest(CamelModel):
    category: Category
    driver_name: str = Field(..., min_length=2, max_length=100)
    points: float = Field(..., ge=0)


class UpdateClassificationRequest(CamelModel):
    category: Optional[Category] = None
    driver_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    points: Optional[float] = Field(default=None, ge=0)


class BulkClassificationItem(CreateClassificationRequest):
    id: Optional[int] = Field(default=None, validation_alias=AliasChoices("id", "_id"))


class BulkClassificationRequest(CamelModel):
    classifications: List[BulkClassificationItem] = Field(..., min_length=1)


class UpdateOperatingHourRequest(CamelModel):
    label: Optional[str] = Field(default=None, max_length=MAX_LABEL_LENGTH)
    visible: Optional[bool] = None

    @field_validator("label")
    @classmethod
    def strip_label(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None


class BulkOperatingHourItem(UpdateOperatingHourRequest):
    id: int = Field(..., validation_alias=AliasChoices("id", "_id"))


# ----------------------------------------------------------------------
# Response views
# ----------------------------------------------------------------------
class UserView(CamelModel):
    id: int
    name: str
    email: str
    role: Role
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ClassificationView(CamelModel):
    id: int
    category: Category
    driver_name: str
    points: float
    position: int
    created_at: datetime
    updated_at: datetime


class OperatingHourView(CamelModel):
    id: int
    group: str
    slot: int
    label: str
    visible: bool
    created_at: datetime
    updated_at: datetime


class PaginationView(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


def user_to_view(user: User) -> UserView:
    return UserView.model_validate(user)


def classification_to_view(record: Classification) -> ClassificationView:
    return ClassificationView.model_validate(record)


def operating_hour_to_view(hour: OperatingHour) -> OperatingHourView:
    return OperatingHourView(
        id=hour.id,
        group=hour.group.value,
        slot=hour.slot,
        label=hour.label,
        visible=hour.visible,
        created_at=hour.created_at,
        updated_at=hour.updated_at,
    )


def page_to_view(page: Page) -> PaginationView:
    return PaginationView(page=page.page, limit=page.limit, total=page.total, pages=page.pages)


def _item_error_to_dict(error: ItemError) -> Dict[str, object]:
    payload: Dict[str, object] = {"error": error.error}
    if error.id is not None:
        payload["id"] = error.id
    if error.driver_name is not None:
        payload["driverName"] = error.driver_name
    return payload


def _serialize(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


def envelope(
    message: str,
    data: Any = None,
    *,
    pagination: Optional[Page] = None,
    success: bool = True,
    status_code: int = status.HTTP_200_OK,
) -> JSONResponse:
    """Wrap a payload in the ``{success, message, data?, pagination?}`` envelope."""

    content: Dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        content["data"] = _serialize(data)
    if pagination is not None:
        content["pagination"] = _serialize(page_to_view(pagination))
    return JSONResponse(status_code=status_code, content=content)


def _classification_result_to_dict(result: ClassificationReconcileResult) -> Dict[str, object]:
    return {
        "created": [classification_to_view(item) for item in result.created],
        "updated": [classification_to_view(item) for item in result.updated],
        "unchanged": [classification_to_view(item) for item in result.unchanged],
        "deleted": list(result.deleted),
        "errors": [_item_error_to_dict(error) for error in result.errors],
        "total": result.total,
    }


def _hours_result_to_dict(result: OperatingHoursReconcileResult) -> Dict[str, object]:
    return {
        "updated": [operating_hour_to_view(item) for item in result.updated],
        "unchanged": [operating_hour_to_view(item) for item in result.unchanged],
        "errors": [_item_error_to_dict(error) for error in result.errors],
        "total": result.total,
    }


def _grouped_to_dict(grouped: Dict[Any, List[OperatingHour]]) -> Dict[str, object]:
    return {
        group.value: [operating_hour_to_view(hour) for hour in hours]
        for group, hours in grouped.items()
    }


def _format_validation_errors(exc: RequestValidationError) -> str:
    messages: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"})
        text = str(error.get("msg", "Invalid value"))
        messages.append(f"{location}: {text}" if location else text)
    return "; ".join(messages) or "Invalid request"


def _trusted_proxy_hosts(settings: Settings) -> list[str] | str:
    hosts = [host for host in settings.trusted_proxies if host]
    if not hosts or "*" in hosts:
        return "*"
    return hosts


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    initialize_database: bool = False,
    bootstrap_admin: bool = True,
) -> FastAPI:
    if settings is None:
        settings = load_settings()

    if database is None:
        database = Database(settings.database_path)
        database.initialize()
    elif initialize_database:
        database.initialize()

    accounts = AccountService(
        database,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        TokenService(settings.jwt_secret, ttl=settings.jwt_expires_in),
    )
    ranking = RankingEngine(database)
    hours = OperatingHoursRegistry(database)
    reconciler = ReconciliationService(ranking, hours)

    if bootstrap_admin:
        if settings.admin_password:
            accounts.bootstrap_admin(settings.admin_name, settings.admin_email, settings.admin_password)
        else:
            logger.warning("KART_ADMIN_PASSWORD is not set; skipping admin bootstrap")

    app = FastAPI(
        title="Carrera Kart API",
        description="Users, classifications and operating hours for the karting venue",
        version=__version__,
    )
    # Added innermost first: throttling sees the client address resolved by the proxy middleware.
    if settings.rate_limit_max > 0:
        app.add_middleware(
            RateLimitMiddleware,
            max_requests=settings.rate_limit_max,
            window=settings.rate_limit_window,
        )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts(settings))
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization"],
        )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    started_at = time.monotonic()

    auth = BearerAuth(accounts.resolve_token)
    admin_required = require_roles(auth, [Role.ADMIN])

    def ensure_database() -> Database:
        if not database.ping():
            raise InternalError("Database connection failed")
        return database

    api = APIRouter(prefix=settings.api_prefix)
    router = APIRouter(dependencies=[Depends(ensure_database)])

    @app.get("/")
    async def root() -> JSONResponse:
        return JSONResponse(
            content={
                "success": True,
                "message": "Welcome to the Carrera Kart API",
                "version": __version__,
                "documentation": f"{settings.api_prefix}/health",
            }
        )

    @api.get("/health")
    async def healthcheck() -> JSONResponse:
        database_status = database.status()
        healthy = database_status["status"] == "Connected"
        return JSONResponse(
            status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "success": healthy,
                "message": "API is running" if healthy else "API is running but the database is unreachable",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "api": {
                    "status": "Running",
                    "version": __version__,
                    "environment": settings.environment,
                },
                "database": database_status,
                "uptime": round(time.monotonic() - started_at, 3),
            },
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @router.post("/users/login")
    async def login(payload: LoginRequest) -> JSONResponse:
        result = accounts.authenticate(payload.email, payload.password)
        return envelope(
            "Login successful",
            {"user": user_to_view(result.user), "token": result.token},
        )

    @router.get("/users/profile")
    async def read_profile(current_user: User = Depends(auth)) -> JSONResponse:
        return envelope("User profile", user_to_view(current_user))

    @router.put("/users/profile")
    async def update_profile(payload: UpdateProfileRequest, current_user: User = Depends(auth)) -> JSONResponse:
        updated = accounts.update_profile(
            current_user.id,
            name=payload.name,
            email=payload.email,
            password=payload.password,
        )
        return envelope("Profile updated successfully", user_to_view(updated))

    @router.post("/users", status_code=status.HTTP_201_CREATED)
    async def create_user(payload: CreateUserRequest, _: User = Depends(admin_required)) -> JSONResponse:
        user = accounts.create_user(payload.name, payload.email, payload.password, payload.role)
        return envelope("User created successfully", user_to_view(user), status_code=status.HTTP_201_CREATED)

    @router.get("/users")
    async def list_users(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        users, pagination = accounts.list_users(page=page, limit=limit)
        return envelope("Users found", [user_to_view(user) for user in users], pagination=pagination)

    @router.get("/users/{user_id}")
    async def read_user(user_id: int, _: User = Depends(admin_required)) -> JSONResponse:
        return envelope("User found", user_to_view(accounts.get_user(user_id)))

    @router.put("/users/{user_id}")
    async def update_user(
        user_id: int,
        payload: UpdateUserRequest,
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        updated = accounts.update_user(
            user_id,
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role,
            is_active=payload.is_active,
        )
        return envelope("User updated successfully", user_to_view(updated))

    @router.delete("/users/{user_id}")
    async def delete_user(user_id: int, _: User = Depends(admin_required)) -> JSONResponse:
        accounts.deactivate_user(user_id)
        return envelope("User deleted successfully")

    # ------------------------------------------------------------------
    # Classifications
    # ------------------------------------------------------------------
    @router.get("/classifications/leaderboard")
    async def read_leaderboard() -> JSONResponse:
        board = ranking.leaderboard()
        return envelope(
            "Leaderboard found",
            {
                category.value: [classification_to_view(record) for record in records]
                for category, records in board.items()
            },
        )

    @router.get("/classifications/category/{category}")
    async def read_category(category: Category) -> JSONResponse:
        records = ranking.by_category(category)
        return envelope(
            f"Classifications for category {category.value}",
            [classification_to_view(record) for record in records],
        )

    @router.get("/classifications")
    async def list_classifications(
        category: Optional[Category] = Query(None),
        driver_name: Optional[str] = Query(None, alias="driverName", min_length=1),
        min_points: Optional[float] = Query(None, alias="minPoints", ge=0),
        max_points: Optional[float] = Query(None, alias="maxPoints", ge=0),
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    ) -> JSONResponse:
        filters = ClassificationFilters(
            category=category,
            driver_name=driver_name,
            min_points=min_points,
            max_points=max_points,
        )
        records, pagination = ranking.list(filters, page=page, limit=limit)
        return envelope(
            "Classifications found",
            [classification_to_view(record) for record in records],
            pagination=pagination,
        )

    @router.put("/classifications/bulk")
    async def bulk_update_classifications(
        payload: BulkClassificationRequest,
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        items = [
            ClassificationItem(
                id=item.id,
                category=item.category,
                driver_name=item.driver_name,
                points=item.points,
            )
            for item in payload.classifications
        ]
        result = reconciler.reconcile_classifications(items)
        message = "Classifications updated successfully"
        if result.errors:
            message = f"Classifications updated with {len(result.errors)} error(s)"
        return envelope(message, _classification_result_to_dict(result))

    @router.get("/classifications/{classification_id}")
    async def read_classification(classification_id: int) -> JSONResponse:
        return envelope("Classification found", classification_to_view(ranking.get(classification_id)))

    @router.post("/classifications", status_code=status.HTTP_201_CREATED)
    async def create_classification(
        payload: CreateClassificationRequest,
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        record = ranking.create(payload.category, payload.driver_name, payload.points)
        return envelope(
            "Classification created successfully",
            classification_to_view(record),
            status_code=status.HTTP_201_CREATED,
        )

    @router.put("/classifications/{classification_id}")
    async def update_classification(
        classification_id: int,
        payload: UpdateClassificationRequest,
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        record = ranking.update(
            classification_id,
            category=payload.category,
            driver_name=payload.driver_name,
            points=payload.points,
        )
        return envelope("Classification updated successfully", classification_to_view(record))

    @router.delete("/classifications/{classification_id}")
    async def delete_classification(classification_id: int, _: User = Depends(admin_required)) -> JSONResponse:
        ranking.delete(classification_id)
        return envelope("Classification deleted successfully")

    # ------------------------------------------------------------------
    # Operating hours
    # ------------------------------------------------------------------
    @router.get("/operating-hours")
    async def read_operating_hours() -> JSONResponse:
        return envelope("Operating hours found", _grouped_to_dict(hours.grouped()))

    @router.get("/operating-hours/visible")
    async def read_visible_operating_hours() -> JSONResponse:
        return envelope("Visible operating hours found", _grouped_to_dict(hours.grouped(visible_only=True)))

    @router.get("/operating-hours/group/{group}")
    async def read_operating_hours_group(group: str) -> JSONResponse:
        resolved = parse_group(group)
        return envelope(
            f"Operating hours for group {resolved.value}",
            [operating_hour_to_view(hour) for hour in hours.by_group(resolved)],
        )

    @router.put("/operating-hours/bulk-update")
    async def bulk_update_operating_hours(
        payload: List[BulkOperatingHourItem],
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        if not payload:
            raise ValidationError("At least one operating hour must be provided")
        items = [OperatingHourItem(id=item.id, label=item.label, visible=item.visible) for item in payload]
        result = reconciler.reconcile_operating_hours(items)
        message = "Operating hours updated successfully"
        if result.errors:
            message = f"Operating hours updated with {len(result.errors)} error(s)"
        return envelope(message, _hours_result_to_dict(result))

    @router.get("/operating-hours/{hour_id}")
    async def read_operating_hour(hour_id: int) -> JSONResponse:
        return envelope("Operating hour found", operating_hour_to_view(hours.get(hour_id)))

    @router.put("/operating-hours/{hour_id}")
    async def update_operating_hour(
        hour_id: int,
        payload: UpdateOperatingHourRequest,
        _: User = Depends(admin_required),
    ) -> JSONResponse:
        updated = hours.update(hour_id, label=payload.label, visible=payload.visible)
        return envelope("Operating hour updated successfully", operating_hour_to_view(updated))

    @router.patch("/operating-hours/{hour_id}/visibility")
    async def toggle_operating_hour_visibility(hour_id: int, _: User = Depends(admin_required)) -> JSONResponse:
        updated = hours.toggle_visibility(hour_id)
        state = "visible" if updated.visible else "hidden"
        return envelope(f"Operating hour is now {state}", operating_hour_to_view(updated))

    api.include_router(router)
    app.include_router(api)

    # ------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------
    @app.exception_handler(KartError)
    async def handle_kart_error(_: Request, exc: KartError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        return envelope(exc.message, success=False, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return envelope(_format_validation_errors(exc), success=False, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = str(exc.detail)
        if exc.status_code == status.HTTP_404_NOT_FOUND and exc.detail == "Not Found":
            message = f"Route not found - {request.url.path}"
        return envelope(message, success=False, status_code=exc.status_code)

    @app.exception_handler(sqlite3.DatabaseError)
    async def handle_database_error(_: Request, exc: sqlite3.DatabaseError) -> JSONResponse:
        logger.exception("Database error while handling request", exc_info=exc)
        return envelope("Internal server error", success=False, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error while handling request", exc_info=exc)
        return envelope("Internal server error", success=False, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return app


__all__ = ["create_app", "envelope"]
