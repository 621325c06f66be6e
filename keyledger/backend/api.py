"""FastAPI endpoints for claims, round control, key ingestion and config."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .config import BackendSettings, load_settings
from .config_store import CONFIG_KEYS
from .ingest import KeyFileWatcher
from .models import ClaimError, ClaimOutcome, RoundError, StorageError
from .security import verify_token
from .service import KeyLedger, build_ledger

logger = logging.getLogger(__name__)

_CLAIM_STATUS = {
    ClaimError.USER_INELIGIBLE: 403,
    ClaimError.ALREADY_CLAIMED_THIS_ROUND: 409,
    ClaimError.NO_ACTIVE_ROUND: 409,
    ClaimError.POOL_EXHAUSTED: 410,
    ClaimError.TRANSACTION_FAILED: 503,
    ClaimError.STORAGE_UNAVAILABLE: 503,
}

_ROUND_STATUS = {
    RoundError.INVALID_NUMBER: 422,
    RoundError.ALREADY_EXISTS: 409,
    RoundError.TRANSACTION_FAILED: 503,
    RoundError.STORAGE_UNAVAILABLE: 503,
}


class ClaimRequest(BaseModel):
    user: str = Field(min_length=1, max_length=255)
    is_bot: bool = False


class ClaimResponse(BaseModel):
    token: str


class OpenRoundRequest(BaseModel):
    number: int = Field(ge=1)


class ActiveRoundResponse(BaseModel):
    number: int | None


class RoundResponse(BaseModel):
    number: int
    status: str


class RemainingResponse(BaseModel):
    remaining: int


class SyncRequest(BaseModel):
    keys: list[str]


class SyncResponse(BaseModel):
    inserted: int
    already_present: int
    blank: int


class ConfigValueRequest(BaseModel):
    value: str = Field(min_length=1, max_length=255)


class ConfigResponse(BaseModel):
    values: dict[str, str | None]


def _storage_failure(error: StorageError) -> HTTPException:
    return HTTPException(status_code=503, detail=error.value)


def _claim_response(outcome: ClaimOutcome) -> ClaimResponse:
    if outcome.error is not None:
        raise HTTPException(status_code=_CLAIM_STATUS[outcome.error], detail=outcome.error.value)
    return ClaimResponse(token=outcome.token)


def create_app(ledger: KeyLedger | None = None, settings: BackendSettings | None = None) -> FastAPI:
    app_settings = settings if settings is not None else load_settings()
    key_ledger = ledger if ledger is not None else build_ledger(app_settings)
    watcher = KeyFileWatcher(key_ledger.ingestion, app_settings.keys_file, app_settings.sync_interval)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        started = await key_ledger.start()
        if started.error is not None:
            logger.error("Key ledger could not start: %s", started.error.value)
            await key_ledger.stop()
            raise RuntimeError(f"Key ledger could not start: {started.error.value}")
        if app_settings.sync_interval > 0:
            await watcher.start()
        try:
            yield
        finally:
            await watcher.stop()
            await key_ledger.stop()

    app = FastAPI(title="Key Ledger API", version="0.1.0", lifespan=lifespan)
    app.state.ledger = key_ledger
    app.state.watcher = watcher

    def get_ledger() -> KeyLedger:
        return key_ledger

    def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
        if not verify_token(x_admin_token or "", app_settings.admin_token_hash, app_settings.server_salt):
            raise HTTPException(status_code=403, detail="Administrator token required")

    @app.post("/api/claims", response_model=ClaimResponse)
    async def post_claim(
        payload: ClaimRequest,
        local_ledger: KeyLedger = Depends(get_ledger),
    ) -> ClaimResponse:
        if payload.is_bot:
            return _claim_response(ClaimOutcome.refused(ClaimError.USER_INELIGIBLE))
        return _claim_response(await local_ledger.claims.claim(payload.user))

    @app.post("/api/admin/claims", response_model=ClaimResponse, dependencies=[Depends(require_admin)])
    async def post_admin_claim(
        payload: ClaimRequest,
        local_ledger: KeyLedger = Depends(get_ledger),
    ) -> ClaimResponse:
        if payload.is_bot:
            return _claim_response(ClaimOutcome.refused(ClaimError.USER_INELIGIBLE))
        return _claim_response(await local_ledger.claims.claim_unchecked(payload.user))

    @app.get("/api/rounds/active", response_model=ActiveRoundResponse)
    async def get_active_round(local_ledger: KeyLedger = Depends(get_ledger)) -> ActiveRoundResponse:
        active = await local_ledger.rounds.get_active_round()
        if active.error is not None:
            raise _storage_failure(active.error)
        return ActiveRoundResponse(number=active.number)

    @app.get("/api/rounds", response_model=list[RoundResponse])
    async def get_rounds(local_ledger: KeyLedger = Depends(get_ledger)) -> list[RoundResponse]:
        listing = await local_ledger.rounds.list_rounds()
        if listing.error is not None:
            raise _storage_failure(listing.error)
        return [RoundResponse(number=record.number, status=record.status.value) for record in listing.rounds]

    @app.post("/api/admin/rounds", response_model=ActiveRoundResponse, dependencies=[Depends(require_admin)])
    async def post_round(
        payload: OpenRoundRequest,
        local_ledger: KeyLedger = Depends(get_ledger),
    ) -> ActiveRoundResponse:
        outcome = await local_ledger.rounds.open_round(payload.number)
        if outcome.error is not None:
            raise HTTPException(status_code=_ROUND_STATUS[outcome.error], detail=outcome.error.value)
        return ActiveRoundResponse(number=outcome.number)

    @app.get("/api/keys/remaining", response_model=RemainingResponse)
    async def get_remaining(local_ledger: KeyLedger = Depends(get_ledger)) -> RemainingResponse:
        count = await local_ledger.inventory.count_unclaimed()
        if count.error is not None:
            raise _storage_failure(count.error)
        return RemainingResponse(remaining=count.remaining)

    @app.post("/api/admin/keys/sync", response_model=SyncResponse, dependencies=[Depends(require_admin)])
    async def post_sync(
        payload: SyncRequest,
        local_ledger: KeyLedger = Depends(get_ledger),
    ) -> SyncResponse:
        report = await local_ledger.ingestion.sync(payload.keys)
        if report.error is not None:
            raise _storage_failure(report.error)
        return SyncResponse(
            inserted=report.inserted,
            already_present=report.already_present,
            blank=report.blank,
        )

    @app.get("/api/admin/config", response_model=ConfigResponse, dependencies=[Depends(require_admin)])
    async def get_config(local_ledger: KeyLedger = Depends(get_ledger)) -> ConfigResponse:
        return ConfigResponse(values={key: local_ledger.config.get(key) for key in CONFIG_KEYS})

    @app.put("/api/admin/config/{key}", response_model=ConfigResponse, dependencies=[Depends(require_admin)])
    async def put_config(
        key: str,
        payload: ConfigValueRequest,
        local_ledger: KeyLedger = Depends(get_ledger),
    ) -> ConfigResponse:
        try:
            update = await local_ledger.config.set(key, payload.value)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if update.error is not None:
            raise _storage_failure(update.error)
        return ConfigResponse(values={name: local_ledger.config.get(name) for name in CONFIG_KEYS})

    return app


app = create_app()
