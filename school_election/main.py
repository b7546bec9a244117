"""
FastAPI application for the school election service.

Students cast votes for candidates grouped by position; administrators
manage positions, candidates, party lists, branding and the student roster,
and watch live tallies.
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .auth import create_access_token, decode_access_token
from .ballot import Denial, Voter
from .config import settings
from .database import PostgresStorage
from .models import (
    BallotResponse,
    CandidateIn,
    CandidateOut,
    CandidateUpdate,
    ErrorResponse,
    GradeLevelUpdate,
    HealthResponse,
    LoginRequest,
    MassRegisterItem,
    MessageResponse,
    PartyListIn,
    PartyListOut,
    PartyListUpdate,
    PositionIn,
    PositionOut,
    RegisterRequest,
    SchoolLevelUpdate,
    SystemSettingsOut,
    SystemSettingsUpdate,
    TokenResponse,
    UserOut,
    VoteResponse,
)
from .service import VoteDenied, VotingService
from .storage import ConflictError, MemoryStorage, NotFoundError, Storage, StorageError

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Prometheus metrics
votes_cast = Counter(
    "votes_cast_total",
    "Total number of votes recorded"
)
vote_denials = Counter(
    "vote_denials_total",
    "Total number of votes rejected by an admission rule",
    ["reason"]
)
vote_resets = Counter(
    "vote_resets_total",
    "Total number of ballots reset by an administrator"
)
storage_errors = Counter(
    "storage_errors_total",
    "Total number of storage failures surfaced to clients",
    ["endpoint"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

DENIAL_STATUS = {
    Denial.CANDIDATE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Denial.POSITION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Denial.ADMIN_CANNOT_VOTE: status.HTTP_403_FORBIDDEN,
    Denial.BALLOT_LOCKED: status.HTTP_403_FORBIDDEN,
    Denial.DUPLICATE_VOTE: status.HTTP_409_CONFLICT,
    Denial.POSITION_CAP_EXCEEDED: status.HTTP_400_BAD_REQUEST,
}

bearer_scheme = HTTPBearer(auto_error=False)
router = APIRouter()


def create_storage() -> Storage:
    """Build the storage backend selected by configuration."""
    if settings.STORAGE_BACKEND == "postgres":
        return PostgresStorage()
    if settings.STORAGE_BACKEND != "memory":
        raise ValueError(f"Unknown storage backend: {settings.STORAGE_BACKEND}")
    return MemoryStorage()


# Dependencies

def get_service(request: Request) -> VotingService:
    return request.app.state.service


async def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    service: VotingService = Depends(get_service)
) -> Voter:
    """Resolve the bearer token to a stored user."""
    user_id = decode_access_token(credentials.credentials) if credentials else None
    user = await service.storage.get_user(user_id) if user_id is not None else None
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


async def require_admin(user: Voter = Depends(current_user)) -> Voter:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def _require_self_or_admin(user: Voter, user_id: int) -> None:
    if user.id != user_id and not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You can only update your own profile"
        )


# Sessions

@router.post("/api/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED,
             tags=["Session"])
async def register(payload: RegisterRequest, service: VotingService = Depends(get_service)):
    """Register a student and start a session."""
    user = await service.register(payload.reference_number, payload.student_name)
    return TokenResponse(
        access_token=create_access_token(user.id, user.is_admin),
        user=UserOut.from_voter(user)
    )


@router.post("/api/login", response_model=TokenResponse, tags=["Session"])
async def login(payload: LoginRequest, service: VotingService = Depends(get_service)):
    """Start a session with a reference number and student name."""
    user = await service.authenticate(payload.reference_number, payload.student_name)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid reference number or name"
        )
    return TokenResponse(
        access_token=create_access_token(user.id, user.is_admin),
        user=UserOut.from_voter(user)
    )


@router.get("/api/user", response_model=UserOut, tags=["Session"])
async def get_current_user(user: Voter = Depends(current_user)):
    return UserOut.from_voter(user)


# Voting

@router.get("/api/ballot", response_model=BallotResponse, tags=["Voting"])
async def get_ballot(user: Voter = Depends(current_user),
                     service: VotingService = Depends(get_service)):
    """Positions, candidates visible to the voter, and the voter's ballot."""
    return await service.ballot_view(user)


@router.post(
    "/api/vote/{candidate_id}",
    response_model=VoteResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Position cap reached"},
        403: {"model": ErrorResponse, "description": "Voter may not vote"},
        404: {"model": ErrorResponse, "description": "Candidate or position not found"},
        409: {"model": ErrorResponse, "description": "Candidate already on the ballot"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry"}
    },
    tags=["Voting"]
)
@limiter.limit(settings.RATE_LIMIT)
async def submit_vote(request: Request, candidate_id: int,
                      user: Voter = Depends(current_user),
                      service: VotingService = Depends(get_service)) -> VoteResponse:
    """
    Cast a vote for a candidate.

    - **candidate_id**: Candidate to add to the ballot

    Returns the updated ballot and whether every position's cap is now met.
    """
    outcome = await service.cast_vote(user.id, candidate_id)
    votes_cast.inc()
    return VoteResponse(
        candidate_id=candidate_id,
        votes=list(outcome.voter.ballot),
        voting_complete=outcome.voting_complete,
        remaining_votes=outcome.remaining
    )


@router.post("/api/users/mark-voted", response_model=MessageResponse, tags=["Voting"])
async def mark_voted(user: Voter = Depends(current_user),
                     service: VotingService = Depends(get_service)):
    """Finish voting; the ballot is locked until an administrator resets it."""
    await service.finish_voting(user.id)
    return MessageResponse(message="User marked as voted successfully")


@router.patch("/api/users/{user_id}/school-level", response_model=MessageResponse, tags=["Voting"])
async def update_school_level(user_id: int, payload: SchoolLevelUpdate,
                              user: Voter = Depends(current_user),
                              service: VotingService = Depends(get_service)):
    _require_self_or_admin(user, user_id)
    await service.storage.update_user_levels(user_id, school_level=payload.school_level)
    return MessageResponse(message="School level updated successfully")


@router.patch("/api/users/{user_id}/grade-level", response_model=MessageResponse, tags=["Voting"])
async def update_grade_level(user_id: int, payload: GradeLevelUpdate,
                             user: Voter = Depends(current_user),
                             service: VotingService = Depends(get_service)):
    _require_self_or_admin(user, user_id)
    await service.storage.update_user_levels(user_id, grade_level=payload.grade_level)
    return MessageResponse(message="Grade level updated successfully")


# Election setup

@router.get("/api/positions", response_model=List[PositionOut], tags=["Election"])
async def list_positions(service: VotingService = Depends(get_service)):
    return await service.storage.list_positions()


@router.post("/api/positions", response_model=PositionOut, status_code=status.HTTP_201_CREATED,
             tags=["Election"])
async def create_position(payload: PositionIn, admin: Voter = Depends(require_admin),
                          service: VotingService = Depends(get_service)):
    position = await service.storage.create_position(
        payload.name, max_votes=payload.max_votes, category=payload.category
    )
    logger.info(f"Position created: id={position.id}, name={position.name}, cap={position.max_votes}")
    return position


@router.delete("/api/positions/{position_id}", response_model=MessageResponse, tags=["Election"])
async def delete_position(position_id: int, admin: Voter = Depends(require_admin),
                          service: VotingService = Depends(get_service)):
    await service.storage.delete_position(position_id)
    return MessageResponse(message="Position deleted successfully")


@router.get("/api/candidates", response_model=List[CandidateOut], tags=["Election"])
async def list_candidates(service: VotingService = Depends(get_service)):
    return await service.storage.list_candidates()


@router.post("/api/candidates", response_model=CandidateOut, status_code=status.HTTP_201_CREATED,
             tags=["Election"])
async def create_candidate(payload: CandidateIn, admin: Voter = Depends(require_admin),
                           service: VotingService = Depends(get_service)):
    candidate = await service.storage.create_candidate(
        payload.name,
        payload.position_id,
        party_list_id=payload.party_list_id,
        image_url=payload.image_url,
        school_levels=payload.school_levels,
        grade_levels=payload.grade_levels
    )
    logger.info(f"Candidate created: id={candidate.id}, position={candidate.position_id}")
    return candidate


@router.patch("/api/candidates/{candidate_id}", response_model=CandidateOut, tags=["Election"])
async def update_candidate(candidate_id: int, payload: CandidateUpdate,
                           admin: Voter = Depends(require_admin),
                           service: VotingService = Depends(get_service)):
    return await service.storage.update_candidate(
        candidate_id, payload.model_dump(exclude_unset=True)
    )


@router.delete("/api/candidates/{candidate_id}", response_model=MessageResponse, tags=["Election"])
async def delete_candidate(candidate_id: int, admin: Voter = Depends(require_admin),
                           service: VotingService = Depends(get_service)):
    await service.storage.delete_candidate(candidate_id)
    return MessageResponse(message="Candidate deleted successfully")


@router.get("/api/party-lists", response_model=List[PartyListOut], tags=["Election"])
async def list_party_lists(service: VotingService = Depends(get_service)):
    return await service.storage.list_party_lists()


@router.post("/api/party-lists", response_model=PartyListOut, status_code=status.HTTP_201_CREATED,
             tags=["Election"])
async def create_party_list(payload: PartyListIn, admin: Voter = Depends(require_admin),
                            service: VotingService = Depends(get_service)):
    return await service.storage.create_party_list(payload.name, color=payload.color)


@router.patch("/api/party-lists/{party_list_id}", response_model=PartyListOut, tags=["Election"])
async def update_party_list(party_list_id: int, payload: PartyListUpdate,
                            admin: Voter = Depends(require_admin),
                            service: VotingService = Depends(get_service)):
    return await service.storage.update_party_list(
        party_list_id, payload.model_dump(exclude_unset=True)
    )


@router.get("/api/system-settings", response_model=SystemSettingsOut, tags=["Election"])
async def get_system_settings(service: VotingService = Depends(get_service)):
    return await service.storage.get_system_settings()


@router.patch("/api/system-settings", response_model=SystemSettingsOut, tags=["Election"])
async def update_system_settings(payload: SystemSettingsUpdate,
                                 admin: Voter = Depends(require_admin),
                                 service: VotingService = Depends(get_service)):
    return await service.storage.update_system_settings(payload.model_dump(exclude_unset=True))


# Roster and tallies

@router.get("/api/users", response_model=List[UserOut], tags=["Admin"])
async def list_users(admin: Voter = Depends(require_admin),
                     service: VotingService = Depends(get_service)):
    return [UserOut.from_voter(u) for u in await service.storage.list_users()]


@router.post("/api/users/mass-register", response_model=List[UserOut],
             status_code=status.HTTP_201_CREATED, tags=["Admin"])
async def mass_register(payload: List[MassRegisterItem], admin: Voter = Depends(require_admin),
                        service: VotingService = Depends(get_service)):
    created = await service.mass_register(
        [(item.reference_number, item.student_name) for item in payload]
    )
    return [UserOut.from_voter(u) for u in created]


@router.delete("/api/users/{user_id}", response_model=MessageResponse, tags=["Admin"])
async def delete_user(user_id: int, admin: Voter = Depends(require_admin),
                      service: VotingService = Depends(get_service)):
    await service.storage.delete_user(user_id)
    return MessageResponse(message="User deleted successfully")


@router.post("/api/users/{user_id}/reset-vote", response_model=MessageResponse, tags=["Admin"])
async def reset_vote(user_id: int, admin: Voter = Depends(require_admin),
                     service: VotingService = Depends(get_service)):
    """Undo a voter's ballot and unlock it."""
    await service.reset_vote(user_id)
    vote_resets.inc()
    return MessageResponse(message="User's vote has been reset successfully")


@router.get("/api/admin/results", tags=["Admin"])
async def get_results(admin: Voter = Depends(require_admin),
                      service: VotingService = Depends(get_service)):
    """Per-position results, party totals and turnout."""
    return await service.results()


@router.get("/api/admin/integrity", tags=["Admin"])
async def get_integrity(admin: Voter = Depends(require_admin),
                        service: VotingService = Depends(get_service)):
    """Compare stored vote counts with a recount of all ballots."""
    return await service.integrity_report()


# Service endpoints

@router.get(
    f"/api/{settings.API_VERSION}/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Service unhealthy"}}
)
async def health_check(service: VotingService = Depends(get_service)):
    """Check health of the service and its storage backend."""
    healthy = await service.storage.check_health()
    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        services={"storage": "connected" if healthy else "disconnected"},
        timestamp=datetime.utcnow()
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "vote": "/api/vote/{candidate_id}",
            "ballot": "/api/ballot",
            "results": "/api/admin/results",
            "health": f"/api/{settings.API_VERSION}/health",
            "metrics": "/metrics"
        }
    }


# Error mapping

async def vote_denied_handler(request: Request, exc: VoteDenied):
    decision = exc.decision
    vote_denials.labels(reason=decision.reason.value).inc()
    details = {"cap": decision.cap} if decision.cap is not None else {}
    return JSONResponse(
        status_code=DENIAL_STATUS[decision.reason],
        content=ErrorResponse(
            error=decision.reason.value,
            message=decision.message,
            details=details
        ).model_dump()
    )


async def storage_error_handler(request: Request, exc: StorageError):
    storage_errors.labels(endpoint=request.url.path).inc()
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        headers={"Retry-After": str(settings.RETRY_AFTER_SECONDS)},
        content=ErrorResponse(
            error="storage_unavailable",
            message="The vote store is temporarily unavailable, please retry"
        ).model_dump()
    )


async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(error="not_found", message=str(exc)).model_dump()
    )


async def conflict_handler(request: Request, exc: ConflictError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(error="conflict", message=str(exc)).model_dump()
    )


async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(error="internal_error", message="Internal server error").model_dump()
    )


def create_app(storage: Optional[Storage] = None) -> FastAPI:
    """
    Build the application around a storage backend.

    Args:
        storage: Backend to use; defaults to the one selected by configuration

    Returns:
        FastAPI: Configured application
    """
    storage = storage if storage is not None else create_storage()
    service = VotingService(storage, settings.admin_credentials)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info(f"Starting {settings.SERVICE_NAME} service...")
        try:
            await storage.initialize()
            if settings.SEED_ADMIN:
                await service.ensure_admin()
            logger.info(f"{settings.SERVICE_NAME} started successfully")
        except Exception as e:
            logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
            raise

        yield

        logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
        await storage.close()

    app = FastAPI(
        title="School Election API",
        description="API for casting votes and managing a school election",
        version=settings.API_VERSION,
        lifespan=lifespan
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(VoteDenied, vote_denied_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        """Middleware to track request duration."""
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        request_duration.labels(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status=response.status_code
        ).observe(time.perf_counter() - start)
        return response

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "school_election.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
