from signal_bridge.routers import trade_router

__all__ = ["trade_router"]
