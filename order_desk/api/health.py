"""
Health check and status endpoints
"""
from fastapi import APIRouter, Request
from datetime import datetime
from order_desk.config import get_settings
from order_desk import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status(request: Request):
    """Get system status"""
    schema = getattr(request.app.state, "schema", None)
    hub = getattr(request.app.state, "hub", None)
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "pinned_tables": {
            kind: {"name": pinned.name, "scope_columns": list(pinned.scope_columns)}
            for kind, pinned in (schema.tables.items() if schema else [])
        },
        "realtime_subscribers": hub.subscriber_count if hub else 0,
        "features": {
            "require_scope": settings.require_scope,
            "suggest_net_of_stock": settings.suggest_net_of_stock,
            "margin_percent": settings.margin_percent,
        },
        "timestamp": datetime.utcnow().isoformat()
    }
