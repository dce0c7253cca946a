"""
Order Desk
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from order_desk.config import get_settings
from order_desk.utils.logger import log
from order_desk import __version__

from order_desk.api import health, orders, sales
from order_desk.connectors.realtime import RealtimeHub
from order_desk.connectors.sales_feed import SalesFeed
from order_desk.connectors.sql_store import SqlStore
from order_desk.services.schema_resolver import ResolvedSchema

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from order_desk.models.base import init_db, SessionLocal
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")
        raise

    app.state.hub = RealtimeHub()
    app.state.store = SqlStore(SessionLocal, app.state.hub)
    app.state.schema = ResolvedSchema()
    app.state.sales_feed = SalesFeed(app.state.store, settings)
    app.state.stock_undo = {}

    yield

    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Provider order composition and replenishment

    - One working order per provider, tenant and branch
    - Items grouped, ordered and checked off while composing
    - Sales statistics and suggested quantities per product
    - Snapshots, spreadsheet and JSON exchange, clipboard text
    - Stock application from sales since a point in time
    - Realtime item changes over WebSocket
    """,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(orders.router)
app.include_router(sales.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "order": "GET /providers/{provider_id}/order",
            "add_item": "POST /providers/{provider_id}/order/items",
            "apply_suggested": "POST /providers/{provider_id}/order/apply-suggested",
            "snapshots": "GET /providers/{provider_id}/order/snapshots",
            "export_xlsx": "GET /providers/{provider_id}/order/export.xlsx",
            "import": "POST /providers/{provider_id}/order/import",
            "clipboard": "GET /providers/{provider_id}/order/clipboard",
            "stock_preview": "POST /providers/{provider_id}/order/stock/preview",
            "realtime": "WS /providers/{provider_id}/order/ws",
            "sales_location": "GET /sales/location",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "order_desk.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
