import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import get_settings
from database import Storage, StorageUnavailable, create_storage_engine
from models import CATEGORIES
from periods import parse_timestamp, resolve_window
from scheduler import ReconnectScheduler
from schemas import (
    SummaryOut,
    TransactionOut,
    TransactionPatch,
    cents_to_amount,
    validation_message,
)
from services import (
    EditWindowClosed,
    TransactionFilters,
    TransactionNotFound,
    TransactionService,
    TransactionValidationError,
    build_filters,
    validate_transaction,
)

logger = logging.getLogger(__name__)

settings = get_settings()
app = FastAPI(title="Money Manager API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = Storage(create_storage_engine(settings))
reconnect_scheduler = ReconnectScheduler(storage, settings)


def get_storage() -> Storage:
    return storage


def get_service(storage: Storage = Depends(get_storage)) -> TransactionService:
    return TransactionService(storage)


@app.on_event("startup")
def startup_event():
    reconnect_scheduler.start()


@app.on_event("shutdown")
def shutdown_event():
    reconnect_scheduler.stop()
    storage.dispose()


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.warning(f"storage_unavailable: path={request.url.path} reason={exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"request_failed: path={request.url.path}")
    content: dict[str, object] = {"detail": "Internal server error"}
    if not get_settings().is_production:
        content["error"] = "".join(traceback.format_exception(exc))
    return JSONResponse(status_code=500, content=content)


def _timestamp_param(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_timestamp(value)


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        window = resolve_window(
            params.get("viewType"),
            _timestamp_param(params.get("startDate")),
            _timestamp_param(params.get("endDate")),
        )
        return build_filters(window, params.get("category"), params.get("division"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def health_payload(storage: Storage, message: str) -> dict[str, str]:
    return {
        "status": "OK",
        "message": message,
        "database": storage.status(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/")
def root(storage: Storage = Depends(get_storage)):
    return health_payload(storage, "Money Manager API is running")


@app.get("/api/health")
def health(storage: Storage = Depends(get_storage)):
    return health_payload(storage, "Server is running")


@app.get("/api/categories")
def categories() -> list[str]:
    return list(CATEGORIES)


@app.get("/api/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request, service: TransactionService = Depends(get_service)
):
    filters = filters_from_request(request)
    return [TransactionOut.from_model(txn) for txn in service.list(filters)]


@app.get("/api/transactions/summary", response_model=SummaryOut)
def transactions_summary(
    request: Request, service: TransactionService = Depends(get_service)
):
    filters = filters_from_request(request)
    summary = service.summary(filters)
    return SummaryOut(
        income=cents_to_amount(summary.income_cents),
        expense=cents_to_amount(summary.expense_cents),
        balance=cents_to_amount(summary.balance_cents),
    )


@app.post("/api/transactions", status_code=201, response_model=TransactionOut)
def create_transaction(
    payload: Any = Body(...), service: TransactionService = Depends(get_service)
):
    try:
        data = validate_transaction(payload)
    except TransactionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionOut.from_model(service.create(data))


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: Any = Body(...),
    service: TransactionService = Depends(get_service),
):
    try:
        patch = TransactionPatch.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=validation_message(exc)) from exc
    try:
        txn = service.update(transaction_id, patch)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except EditWindowClosed as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except TransactionValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionOut.from_model(txn)


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, service: TransactionService = Depends(get_service)
):
    try:
        service.delete(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"message": "Transaction deleted successfully"}


def main():
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        timeout_graceful_shutdown=settings.shutdown_grace_secs,
    )


if __name__ == "__main__":
    main()
