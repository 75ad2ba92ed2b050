import logging
import time
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Header, Path, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .errors import AuthError, FinanceError
from .persistence import Persistence, get_persistence
from .schemas import (
    MAX_ID,
    ApiErrorDetail,
    AuthResponse,
    BankAccountCreate,
    BankAccountResponse,
    BulkDeleteResponse,
    CategoryCreate,
    CategoryRef,
    CategoryResponse,
    HealthResponse,
    LedgerSummaryResponse,
    LocationResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    SubcategoryCreate,
    SubcategoryResponse,
    TransactionCreate,
    TransactionResponse,
    TransactionUpdate,
    UserPasswordChange,
    UserResponse,
)
from .services.auth import AuthService, TokenClaims
from .services.ledger import summarize
from .services.location import Geocoder, LocationResolver, NominatimGeocoder
from .services.taxonomy import seed_taxonomy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _token_from_header(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Access token required")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError("Invalid Authorization header")
    return parts[1].strip()


def _require_user(request: Request, authorization: str | None) -> TokenClaims:
    return _auth(request).verify_token(_token_from_header(authorization))


def _auth(request: Request) -> AuthService:
    return request.app.state.auth


def _persistence(request: Request) -> Persistence:
    return request.app.state.persistence


def _user_response(row: dict[str, Any]) -> UserResponse:
    return UserResponse(id=row["id"], email=row["email"], fullName=row["full_name"], createdAt=row["created_at"])


def _bank_account_response(row: dict[str, Any]) -> BankAccountResponse:
    return BankAccountResponse(
        id=row["id"],
        name=row["name"],
        accountNumber=row["account_number"],
        userId=row["user_id"],
        createdAt=row["created_at"],
    )


def _subcategory_response(row: dict[str, Any]) -> SubcategoryResponse:
    return SubcategoryResponse(id=row["id"], name=row["name"], categoryId=row["category_id"])


def _category_response(row: dict[str, Any]) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        name=row["name"],
        subcategories=[_subcategory_response(sub) for sub in row.get("subcategories", [])],
    )


def _transaction_response(row: dict[str, Any]) -> TransactionResponse:
    category = row.get("category")
    subcategory = row.get("subcategory")
    return TransactionResponse(
        id=row["id"],
        account=row["account"],
        date=row["date"],
        name=row["name"],
        debit=row["debit"],
        credit=row["credit"],
        total=row["total"],
        categoryId=row["category_id"],
        subcategoryId=row["subcategory_id"],
        category=CategoryRef(id=category["id"], name=category["name"]) if category else None,
        subcategory=_subcategory_response(subcategory) if subcategory else None,
        type=row["type"],
        location=row.get("location"),
        latitude=row.get("latitude"),
        longitude=row.get("longitude"),
        userId=row["user_id"],
        createdAt=row["created_at"],
        updatedAt=row["updated_at"],
    )


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(ok=True)


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
async def auth_register(payload: RegisterRequest, request: Request) -> AuthResponse:
    user, token = await run_in_threadpool(
        _auth(request).register, payload.email, payload.fullName, payload.password, payload.confirmPassword
    )
    return AuthResponse(user=_user_response(user), token=token)


@router.post("/auth/login", response_model=AuthResponse)
async def auth_login(payload: LoginRequest, request: Request) -> AuthResponse:
    user, token = await run_in_threadpool(_auth(request).login, payload.email, payload.password)
    return AuthResponse(user=_user_response(user), token=token)


@router.get("/auth/me", response_model=UserResponse)
async def auth_me(request: Request, authorization: str | None = Header(default=None)) -> UserResponse:
    claims = _require_user(request, authorization)
    return _user_response(await run_in_threadpool(_auth(request).get_user, claims.user_id))


@router.put("/auth/change-password", response_model=MessageResponse)
async def change_password(
    payload: UserPasswordChange,
    request: Request,
    authorization: str | None = Header(default=None),
) -> MessageResponse:
    claims = _require_user(request, authorization)
    await run_in_threadpool(_auth(request).change_password, claims.user_id, payload.currentPassword, payload.newPassword)
    return MessageResponse(message="Password changed successfully")


@router.get("/bank-accounts", response_model=list[BankAccountResponse])
async def list_bank_accounts(request: Request, authorization: str | None = Header(default=None)) -> list[BankAccountResponse]:
    claims = _require_user(request, authorization)
    rows = await run_in_threadpool(_persistence(request).list_bank_accounts, claims.user_id)
    return [_bank_account_response(row) for row in rows]


@router.post("/bank-accounts", response_model=BankAccountResponse, status_code=201)
async def create_bank_account(
    payload: BankAccountCreate,
    request: Request,
    authorization: str | None = Header(default=None),
) -> BankAccountResponse:
    claims = _require_user(request, authorization)
    row = await run_in_threadpool(_persistence(request).create_bank_account, claims.user_id, payload)
    return _bank_account_response(row)


@router.delete("/bank-accounts/{account_id}", status_code=204)
async def delete_bank_account(
    request: Request,
    account_id: int = Path(ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> Response:
    claims = _require_user(request, authorization)
    await run_in_threadpool(_persistence(request).delete_bank_account, claims.user_id, account_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/categories", response_model=list[CategoryResponse])
async def list_categories(request: Request, authorization: str | None = Header(default=None)) -> list[CategoryResponse]:
    _require_user(request, authorization)
    rows = await run_in_threadpool(_persistence(request).list_categories)
    return [_category_response(row) for row in rows]


@router.post("/categories", response_model=CategoryResponse, status_code=201)
async def create_category(
    payload: CategoryCreate,
    request: Request,
    authorization: str | None = Header(default=None),
) -> CategoryResponse:
    _require_user(request, authorization)
    return _category_response(await run_in_threadpool(_persistence(request).create_category, payload.name))


@router.delete("/categories/{category_id}", status_code=204)
async def delete_category(
    request: Request,
    category_id: int = Path(ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> Response:
    _require_user(request, authorization)
    await run_in_threadpool(_persistence(request).delete_category, category_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/subcategories", response_model=list[SubcategoryResponse])
async def list_subcategories(
    request: Request,
    categoryId: Optional[int] = Query(default=None, ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> list[SubcategoryResponse]:
    _require_user(request, authorization)
    rows = await run_in_threadpool(_persistence(request).list_subcategories, categoryId)
    return [_subcategory_response(row) for row in rows]


@router.post("/subcategories", response_model=SubcategoryResponse, status_code=201)
async def create_subcategory(
    payload: SubcategoryCreate,
    request: Request,
    authorization: str | None = Header(default=None),
) -> SubcategoryResponse:
    _require_user(request, authorization)
    row = await run_in_threadpool(_persistence(request).create_subcategory, payload.name, payload.categoryId)
    return _subcategory_response(row)


@router.delete("/subcategories/{subcategory_id}", status_code=204)
async def delete_subcategory(
    request: Request,
    subcategory_id: int = Path(ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> Response:
    _require_user(request, authorization)
    await run_in_threadpool(_persistence(request).delete_subcategory, subcategory_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(request: Request, authorization: str | None = Header(default=None)) -> list[TransactionResponse]:
    claims = _require_user(request, authorization)
    rows = await run_in_threadpool(_persistence(request).list_transactions, claims.user_id)
    return [_transaction_response(row) for row in rows]


@router.get("/transactions/summary", response_model=LedgerSummaryResponse)
async def transactions_summary(request: Request, authorization: str | None = Header(default=None)) -> LedgerSummaryResponse:
    claims = _require_user(request, authorization)
    rows = await run_in_threadpool(_persistence(request).list_transactions, claims.user_id)
    summary = summarize(rows)
    return LedgerSummaryResponse(
        runningTotal=summary.running_total,
        totalIncome=summary.total_income,
        totalExpenses=summary.total_expenses,
        count=summary.count,
    )


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    payload: TransactionCreate,
    request: Request,
    authorization: str | None = Header(default=None),
) -> TransactionResponse:
    claims = _require_user(request, authorization)
    settings: Settings = request.app.state.settings
    if settings.geocoding_enabled and payload.location is None and payload.latitude is not None and payload.longitude is not None:
        locations: LocationResolver = request.app.state.locations
        address = await run_in_threadpool(locations.address_for, payload.latitude, payload.longitude)
        payload = payload.model_copy(update={"location": address})
    row = await run_in_threadpool(_persistence(request).create_transaction, claims.user_id, payload)
    return _transaction_response(row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
async def update_transaction(
    payload: TransactionUpdate,
    request: Request,
    transaction_id: int = Path(ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> TransactionResponse:
    claims = _require_user(request, authorization)
    row = await run_in_threadpool(_persistence(request).update_transaction, claims.user_id, transaction_id, payload)
    return _transaction_response(row)


@router.delete("/transactions/{transaction_id}", status_code=204)
async def delete_transaction(
    request: Request,
    transaction_id: int = Path(ge=1, le=MAX_ID),
    authorization: str | None = Header(default=None),
) -> Response:
    claims = _require_user(request, authorization)
    await run_in_threadpool(_persistence(request).delete_transaction, claims.user_id, transaction_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/transactions", response_model=BulkDeleteResponse)
async def delete_all_transactions(request: Request, authorization: str | None = Header(default=None)) -> BulkDeleteResponse:
    claims = _require_user(request, authorization)
    deleted = await run_in_threadpool(_persistence(request).delete_all_transactions, claims.user_id)
    logger.info("user %s cleared %s transactions", claims.user_id, deleted)
    return BulkDeleteResponse(deleted=deleted)


@router.get("/location/reverse", response_model=LocationResponse)
async def reverse_location(
    request: Request,
    latitude: float = Query(ge=-90, le=90, allow_inf_nan=False),
    longitude: float = Query(ge=-180, le=180, allow_inf_nan=False),
    authorization: str | None = Header(default=None),
) -> LocationResponse:
    _require_user(request, authorization)
    locations: LocationResolver = request.app.state.locations
    data = await run_in_threadpool(locations.resolve, latitude, longitude)
    return LocationResponse(latitude=data.latitude, longitude=data.longitude, address=data.address, mapsLink=data.maps_link)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FinanceError)
    async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details: list[dict[str, str]] = []
        for err in exc.errors():
            loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
            details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")).model_dump())
        return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    settings: Settings | None = None,
    persistence: Persistence | None = None,
    geocoder: Geocoder | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    persistence = persistence or get_persistence(settings)
    if settings.seed_on_startup:
        counts = seed_taxonomy(persistence, settings.seed_taxonomy)
        logger.info("taxonomy seeded: %s", counts)
    if geocoder is None and settings.geocoding_enabled:
        geocoder = NominatimGeocoder(
            settings.geocoding_url, settings.geocoding_user_agent, timeout=settings.geocoding_timeout_seconds
        )

    app = FastAPI(
        title="FinStat API",
        version="0.1.0",
        description="Personal finance tracker: transactions, categories and bank accounts.",
    )
    app.state.settings = settings
    app.state.persistence = persistence
    app.state.auth = AuthService(persistence, settings)
    app.state.locations = LocationResolver(geocoder)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    _register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
