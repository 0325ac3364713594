from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import logging
import structlog
import time
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from auth import Identity, SessionRegistry
from config import Settings, get_settings
from errors import ServiceError, StorageError, Unauthorized
from models import (
    ActivityRequest,
    AdminWithdrawal,
    EarningsResponse,
    ErrorResponse,
    FeedbackEntry,
    FeedbackRequest,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    ScreenTimeRequest,
    ScreenTimeResponse,
    SignupRequest,
    SignupResponse,
    WithdrawalRequest,
    WithdrawalTarget,
    WithdrawRequest,
    WithdrawResponse,
)
from repositories import DocumentAccountRepository, DocumentFeedbackRepository
from services import AccountService, FeedbackService, WithdrawalService
from storage import JsonFileStore


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    404: {"model": ErrorResponse, "description": "Account or request not found"},
}


# Dependency injection
def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_withdrawal_service(request: Request) -> WithdrawalService:
    return request.app.state.withdrawal_service


def get_feedback_service(request: Request) -> FeedbackService:
    return request.app.state.feedback_service


def _bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def resolve_identity(request: Request, email: Any) -> Identity:
    """Decide which account the caller may act as.

    With sessions required the bearer token decides, and a body email naming
    another account is refused. Otherwise the supplied email is taken as is.
    """
    settings: Settings = request.app.state.settings
    if not settings.require_session:
        return Identity(email=email)

    token = _bearer_token(request)
    identity = request.app.state.sessions.resolve(token) if token else None
    if identity is None:
        logger.warning("Missing or invalid session token", path=request.url.path)
        raise Unauthorized("Missing or invalid session token.")
    if email is not None and email != identity.email:
        logger.warning("Session does not match account", session_email=identity.email, email=email)
        raise Unauthorized("Session does not match account.")
    return identity


# Accounts; rate limited per app in create_app
async def signup(
    request: Request,
    body: SignupRequest,
    service: AccountService = Depends(get_account_service),
):
    return await service.create(body.username, body.email, body.password)


async def login(
    request: Request,
    body: LoginRequest,
    service: AccountService = Depends(get_account_service),
):
    return await service.authenticate(body.email, body.password)


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request):
    token = _bearer_token(request)
    if token:
        request.app.state.sessions.revoke(token)
    return MessageResponse(message="Logged out.")


@router.post("/activity", response_model=EarningsResponse, responses=ERROR_RESPONSES)
async def record_activity(
    request: Request,
    body: ActivityRequest,
    service: AccountService = Depends(get_account_service),
):
    identity = resolve_identity(request, body.email)
    return await service.record_earnings(identity, body.earningsEarned)


@router.post("/screentime", response_model=ScreenTimeResponse, responses=ERROR_RESPONSES)
async def record_screen_time(
    request: Request,
    body: ScreenTimeRequest,
    service: AccountService = Depends(get_account_service),
):
    identity = resolve_identity(request, body.email)
    return await service.record_screen_time(identity, body.timeSpent)


@router.get("/user/{email}/withdrawals", response_model=List[WithdrawalRequest], responses=ERROR_RESPONSES)
async def user_withdrawals(email: str, service: WithdrawalService = Depends(get_withdrawal_service)):
    return await service.list_for_account(email)


@router.get("/user/{email}", response_model=ProfileResponse, responses=ERROR_RESPONSES)
async def user_profile(email: str, service: AccountService = Depends(get_account_service)):
    return await service.get_profile(email)


# Feedback
@router.post("/submit-feedback", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def submit_feedback(body: FeedbackRequest, service: FeedbackService = Depends(get_feedback_service)):
    return await service.submit(body.name, body.email, body.message)


@router.get("/admin/feedbacks", response_model=List[FeedbackEntry])
async def list_feedbacks(service: FeedbackService = Depends(get_feedback_service)):
    return await service.list_all()


# Withdrawals
@router.post(
    "/withdraw",
    response_model=WithdrawResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
)
async def request_withdrawal(
    request: Request,
    body: WithdrawRequest,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    identity = resolve_identity(request, body.email)
    return await service.request(identity, body.amount, body.method)


@router.post("/user/withdraw/cancel", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def cancel_withdrawal(
    request: Request,
    body: WithdrawalTarget,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    identity = resolve_identity(request, body.email)
    return await service.cancel(identity, request_id=body.id, date=body.date)


@router.get("/admin/withdrawals", response_model=List[AdminWithdrawal])
async def list_withdrawals(service: WithdrawalService = Depends(get_withdrawal_service)):
    return await service.list_all()


@router.post("/admin/approve", response_model=MessageResponse, responses=ERROR_RESPONSES)
async def approve_withdrawal(body: WithdrawalTarget, service: WithdrawalService = Depends(get_withdrawal_service)):
    return await service.approve(body.email, request_id=body.id, date=body.date)


# Health check endpoint
@router.get("/health", response_model=HealthResponse, summary="Health Check")
async def health_check(request: Request):
    return HealthResponse(
        status="healthy",
        accounts_count=await request.app.state.account_repo.get_accounts_count(),
        feedbacks_count=await request.app.state.feedback_repo.get_feedbacks_count(),
    )


@router.get("/", include_in_schema=False)
async def root():
    return {"message": "Screen Time Earnings API", "docs": "/docs"}


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("Malformed request body", url=str(request.url), errors=str(exc.errors()))
    return JSONResponse(status_code=400, content={"message": "Invalid request body."})


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure", url=str(request.url), method=request.method, error=str(exc))
    return JSONResponse(status_code=500, content={"message": "Internal server error."})


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True,
    )
    return JSONResponse(status_code=500, content={"message": "Internal server error."})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application with its stores loaded from ``settings.data_dir``."""
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting API", users_path=str(settings.users_path))
        yield
        logger.info("Shutting down API")

    app = FastAPI(
        title=settings.app_name,
        description="Accounts, screen-time earnings, feedback and withdrawal approvals",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    account_repo = DocumentAccountRepository(JsonFileStore(settings.users_path))
    feedback_repo = DocumentFeedbackRepository(JsonFileStore(settings.feedbacks_path))
    account_repo.load()
    feedback_repo.load()
    sessions = SessionRegistry(ttl_seconds=settings.session_ttl_seconds)

    app.state.settings = settings
    app.state.sessions = sessions
    app.state.account_repo = account_repo
    app.state.feedback_repo = feedback_repo
    app.state.account_service = AccountService(
        account_repo, sessions, bcrypt_rounds=settings.bcrypt_rounds
    )
    app.state.withdrawal_service = WithdrawalService(
        account_repo, echo_request=settings.echo_withdrawal_request
    )
    app.state.feedback_service = FeedbackService(feedback_repo)

    # Add rate limiting
    limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
    credential_limit = limiter.limit(f"{settings.rate_limit_per_minute}/minute")
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_api_route(
        "/signup",
        credential_limit(signup),
        methods=["POST"],
        response_model=SignupResponse,
        responses=ERROR_RESPONSES,
    )
    app.add_api_route(
        "/login",
        credential_limit(login),
        methods=["POST"],
        response_model=LoginResponse,
        responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=settings.allowed_methods,
        allow_headers=settings.allowed_headers,
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        logger.info(
            "Request started",
            method=request.method,
            url=str(request.url),
            client_ip=request.client.host if request.client else None,
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            "Request completed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time=round(process_time, 4),
        )

        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
