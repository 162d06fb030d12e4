import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signal_bridge.config import settings
from signal_bridge.database import init_db
from signal_bridge.exceptions import AppError
from signal_bridge.routers import trade_router
from signal_bridge.services.exchange_service import close_all_exchange_clients
from signal_bridge.services.multi_leg_monitor import MultiLegOrderMonitor
from signal_bridge.services.notification_service import notification_dispatcher
from signal_bridge.services.orphaned_position_guard import OrphanedPositionGuard
from signal_bridge.services.pending_order_monitor import PendingOrderMonitor
from signal_bridge.services.reconciliation_monitor import PositionReconciliationMonitor
from signal_bridge.services.trade_executor import TradeExecutor

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Signal Bridge")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One executor per process: its per-key locks and position store are shared
# by the webhook route and the orphan guard
trade_executor = TradeExecutor()

# Background monitors
reconciliation_monitor = PositionReconciliationMonitor(trade_executor.store)
multi_leg_monitor = MultiLegOrderMonitor()
pending_order_monitor = PendingOrderMonitor(store=trade_executor.store)
orphaned_position_guard = OrphanedPositionGuard(trade_executor)

monitors = [reconciliation_monitor, multi_leg_monitor, pending_order_monitor, orphaned_position_guard]


def override_get_trade_executor():
    return trade_executor


app.dependency_overrides[trade_router.get_trade_executor] = override_get_trade_executor
app.include_router(trade_router.router)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: [{exc.kind}] {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: [{exc.kind}] {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"success": False, "error_kind": "validation_error", "error": errors or "Invalid request"},
    )


# Startup/Shutdown events
@app.on_event("startup")
async def startup_event():
    logger.info("Initializing database...")
    await init_db()

    loaded = await trade_executor.store.load()
    logger.info(f"Position store loaded ({loaded} open positions)")

    await notification_dispatcher.start()

    if not settings.monitors_enabled:
        logger.info("Background monitors disabled")
        return
    for monitor in monitors:
        await monitor.start()
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down - stopping monitors...")
    for monitor in monitors:
        try:
            await monitor.stop()
        except Exception as e:
            logger.error(f"Error stopping {type(monitor).__name__}: {e}")

    # Drain queued notifications before the adapters go away
    await notification_dispatcher.stop()
    await close_all_exchange_clients()
    logger.info("Shutdown complete")


@app.get("/")
async def root():
    return {"message": "Signal Bridge API"}
