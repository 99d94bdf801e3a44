import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional, List

from fastapi import FastAPI, Depends, HTTPException, Request, Path, BackgroundTasks, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import cache, codes, exports, prizes, winners
from .config import settings
from .db import create_tables, get_db, get_session_factory
from .notifications import send_win_notifications
from .rate_limit import is_rate_limited, record_failed_attempt, reset_attempts, clear_rate_limits
from .schemas import CodeRequest, ValidateCodeResponse, PrizePublic, SpinSuccessResponse, SpinFailureResponse
from .schemas import LastWinnersResponse, AdminLoginRequest, AdminLoginResponse
from .schemas import PrizeIn, PrizeOut, CodeOut, GenerateCodesRequest, GenerateCodesResponse
from .schemas import WinnerOut, WinnerUpdate, ClearRateLimitsResponse
from .schemas import CodeUpdate, ResetRequest, ResetResponse
from .security import make_admin_token, require_admin, verify_admin_password
from .spin import CodeStatus, ERROR_MESSAGES, SpinError, SpinStoreError, perform_spin, validate_code
from .utils import client_identifier, normalize_code

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Dev convenience: create tables if they don't exist
    if settings.create_tables:
        await create_tables()
    yield


app = FastAPI(title="Prize Wheel API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,           # exact list
    allow_origin_regex=settings.allowed_origin_regex, # regex (e.g. r"^https://.*\.vercel\.app$")
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exc_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail), "code": "HTTP_ERROR"})

@app.exception_handler(RequestValidationError)
async def validation_exc_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"message": "Validation error", "code": "VALIDATION_ERROR", "errors": exc.errors()})


# --- rate limiter glue ---
# The limiter is a guard, not the source of truth: if its table is unreachable
# we let the request through and log it.

async def _limited(db: AsyncSession, identifier: str) -> bool:
    try:
        return await is_rate_limited(db, identifier)
    except SQLAlchemyError:
        logger.warning("Rate limit check failed for %s, allowing request", identifier, exc_info=True)
        return False

async def _mark_fail(db: AsyncSession, identifier: str) -> None:
    try:
        await record_failed_attempt(db, identifier)
    except SQLAlchemyError:
        logger.warning("Could not record failed attempt for %s", identifier, exc_info=True)

async def _clear_fail(db: AsyncSession, identifier: str) -> None:
    try:
        await reset_attempts(db, identifier)
    except SQLAlchemyError:
        logger.warning("Could not reset attempts for %s", identifier, exc_info=True)


def _spin_failure(error: SpinError, status_code: int) -> JSONResponse:
    body = SpinFailureResponse(error=ERROR_MESSAGES[error], code=error.value)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/api/validate-code", response_model=ValidateCodeResponse)
async def validate_code_route(payload: CodeRequest, request: Request, db: AsyncSession = Depends(get_db)):
    identifier = client_identifier(request.headers)
    if await _limited(db, identifier):
        return JSONResponse(status_code=429, content={"valid": False, "message": ERROR_MESSAGES[SpinError.RATE_LIMITED]})

    code = normalize_code(payload.code)
    if not code:
        return JSONResponse(status_code=400, content={"valid": False, "message": "Invalid request"})

    status = await validate_code(db, code)

    if status is CodeStatus.NOT_FOUND:
        await _mark_fail(db, identifier)
        return ValidateCodeResponse(valid=False, message="Invalid code")
    if status is CodeStatus.ALREADY_USED:
        await _mark_fail(db, identifier)
        return ValidateCodeResponse(valid=False, message="Code already used")

    await _clear_fail(db, identifier)
    return ValidateCodeResponse(valid=True, message="Code is valid")


@app.post(
    "/api/spin",
    response_model=SpinSuccessResponse,
    responses={400: {"model": SpinFailureResponse}, 429: {"model": SpinFailureResponse}, 503: {"model": SpinFailureResponse}},
)
async def spin(
    payload: CodeRequest,
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    identifier = client_identifier(request.headers)
    if await _limited(db, identifier):
        return _spin_failure(SpinError.RATE_LIMITED, 429)

    code = normalize_code(payload.code)
    if not code:
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid request", "code": "INVALID_REQUEST"})

    try:
        result = await perform_spin(session_factory, code)
    except SpinStoreError:
        logger.error("Spin abandoned after retries for client %s", identifier)
        return _spin_failure(SpinError.TRANSIENT_STORE_ERROR, 503)
    except Exception:
        logger.exception("Spin failed unexpectedly for client %s", identifier)
        return JSONResponse(status_code=500, content={"success": False, "error": "An unexpected error occurred", "code": "INTERNAL_ERROR"})

    if not result.success:
        await _mark_fail(db, identifier)
        return _spin_failure(result.error, 400)

    await _clear_fail(db, identifier)
    # emails go out after the response; they cannot touch the committed spin
    background.add_task(send_win_notifications, result.win)

    return SpinSuccessResponse(
        prize=PrizePublic(id=result.prize.id, title=result.prize.title, image_url=result.prize.image_url)
    )


@app.get("/api/prizes", response_model=List[PrizePublic])
async def public_prizes(db: AsyncSession = Depends(get_db)):
    return await cache.get_or_set(cache.PRIZES_KEY, lambda: prizes.wheel_prizes(db), settings.cache_ttl_seconds)


@app.get("/api/prizes/{prize_id}", response_model=PrizePublic)
async def public_prize(prize_id: int = Path(..., ge=1), db: AsyncSession = Depends(get_db)):
    return await prizes.public_prize(db, prize_id)


@app.get("/api/last-winner", response_model=LastWinnersResponse)
async def last_winner(db: AsyncSession = Depends(get_db)):
    rows = await cache.get_or_set(
        f"{cache.WINNERS_KEY_PREFIX}:10", lambda: winners.recent_winners(db, 10), settings.cache_ttl_seconds
    )
    return {"winners": rows, "timestamp": int(time.time() * 1000)}


# --- Admin ---

@app.post("/api/admin/login", response_model=AdminLoginResponse)
async def admin_login(body: AdminLoginRequest, request: Request, db: AsyncSession = Depends(get_db)):
    identifier = f"admin-login:{client_identifier(request.headers)}"
    if await _limited(db, identifier):
        raise HTTPException(status_code=429, detail="Too many failed login attempts, try again later.")

    if not verify_admin_password(body.password):
        await _mark_fail(db, identifier)
        raise HTTPException(status_code=401, detail="Wrong password")

    await _clear_fail(db, identifier)
    return AdminLoginResponse(token=make_admin_token())


@app.get("/api/admin/prizes", response_model=list[PrizeOut])
async def admin_list_prizes(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return await prizes.list_prizes(db)

@app.post("/api/admin/prizes", response_model=PrizeOut, status_code=201)
async def admin_create_prize(payload: PrizeIn, db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return await prizes.create_prize(db, **payload.model_dump())

@app.put("/api/admin/prizes/{prize_id}", response_model=PrizeOut)
async def admin_update_prize(
    payload: PrizeIn,
    prize_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    return await prizes.update_prize(db, prize_id, **payload.model_dump())

@app.delete("/api/admin/prizes/{prize_id}")
async def admin_delete_prize(
    prize_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    await prizes.delete_prize(db, prize_id)
    return {"ok": True}


@app.get("/api/admin/codes", response_model=list[CodeOut])
async def admin_list_codes(
    used: Optional[bool] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    return await codes.list_codes(db, used=used)

@app.post("/api/admin/codes/generate", response_model=GenerateCodesResponse)
async def admin_generate_codes(payload: GenerateCodesRequest, db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    result = await codes.generate_codes(db, [(e.name, e.email) for e in payload.entries])
    return GenerateCodesResponse(
        created=result.created,
        skipped=result.skipped,
        emails_sent=result.emails_sent,
        emails_failed=result.emails_failed,
        codes=[CodeOut.model_validate(c) for c in result.codes],
    )

@app.put("/api/admin/codes/{code_id}", response_model=CodeOut)
async def admin_update_code(
    payload: CodeUpdate,
    code_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    return await codes.update_code(db, code_id, name=payload.name, email=payload.email)

@app.delete("/api/admin/codes/{code_id}")
async def admin_delete_code(
    code_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    await codes.delete_code(db, code_id)
    return {"ok": True}


@app.get("/api/admin/winners", response_model=list[WinnerOut])
async def admin_list_winners(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return [WinnerOut.from_winner(w) for w in await winners.list_winners(db)]

@app.patch("/api/admin/winners/{winner_id}", response_model=WinnerOut)
async def admin_update_winner(
    payload: WinnerUpdate,
    winner_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    w = await winners.update_fulfillment(db, winner_id, prize_sent=payload.prize_sent, notes=payload.notes)
    return WinnerOut.from_winner(w)

@app.delete("/api/admin/winners/{winner_id}")
async def admin_delete_winner(
    winner_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_admin),
):
    await winners.delete_winner(db, winner_id)
    return {"ok": True, "message": "Winner deleted and prize quantity restored"}


@app.delete("/api/admin/rate-limits", response_model=ClearRateLimitsResponse)
async def admin_clear_rate_limits(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    cleared = await clear_rate_limits(db)
    return ClearRateLimitsResponse(ok=True, cleared=cleared)



# --- CSV exports and reset ---

def _csv_response(body: str, name: str) -> Response:
    filename = f"{name}-{date.today().isoformat()}.csv"
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@app.get("/api/admin/prizes/export")
async def admin_export_prizes(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return _csv_response(await exports.prizes_csv(db), "prizes")

@app.get("/api/admin/codes/export")
async def admin_export_codes(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return _csv_response(await exports.codes_csv(db), "codes")

@app.get("/api/admin/winners/export")
async def admin_export_winners(db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return _csv_response(await exports.winners_csv(db), "winners")

@app.post("/api/admin/reset", response_model=ResetResponse)
async def admin_reset(payload: ResetRequest, db: AsyncSession = Depends(get_db), _=Depends(require_admin)):
    return await exports.reset_all(db, payload.reset_password)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "prizewheel.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=False,
    )
