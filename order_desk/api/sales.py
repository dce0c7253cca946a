"""
Sales feed API

Which workbook backs the sales statistics for a scope, and replacing it.
"""
from fastapi import APIRouter, File, HTTPException, Query, Request, UploadFile
from typing import Optional

from order_desk.services.errors import OrderDeskError
from order_desk.utils.logger import log

router = APIRouter(prefix="/sales", tags=["sales"])


@router.get("/location")
async def get_sales_location(
    request: Request,
    tenant_id: Optional[str] = Query(None),
    branch_id: Optional[str] = Query(None),
):
    """Active sales workbook for the scope (default or imported)"""
    location = await request.app.state.sales_feed.resolve_location(tenant_id, branch_id)
    location.pop("base64", None)
    return {"success": True, "data": location}


@router.post("/import")
async def import_sales_workbook(
    request: Request,
    file: UploadFile = File(...),
    tenant_id: Optional[str] = Query(None),
    branch_id: Optional[str] = Query(None),
):
    """Upload a sales workbook and make it the active one for the scope"""
    if not file.filename or not file.filename.lower().endswith(".xlsx"):
        raise HTTPException(400, "File must be an .xlsx Excel file")
    try:
        contents = await file.read()
        activated = await request.app.state.sales_feed.activate(
            tenant_id, branch_id, data=contents, filename=file.filename
        )
        activated.pop("base64", None)
        return {"success": True, "data": activated}
    except OrderDeskError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except Exception as e:
        log.error(f"Sales workbook import failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
