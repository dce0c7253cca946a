"""
Historical sales feed

The sales history is an operator-supplied workbook. Its location lives in
app_settings under the most specific of sales_url:<tenant>:<branch>,
sales_url:<tenant> and sales_url; without a configured entry the default
file from settings is used. Parsed records are cached per location.
"""
import base64
import io
import re
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pandas as pd

from order_desk.config import Settings, get_settings
from order_desk.connectors.base import RemoteStore
from order_desk.services.errors import MissingRelationError, OrderDeskError, WorkbookFormatError
from order_desk.services.sales_stats import SalesRecord
from order_desk.utils.cache import _MISS, clear_prefix, get_cached, set_cached
from order_desk.utils.helpers import NBSP_RX, norm_text, to_nullable_number, to_number
from order_desk.utils.logger import log
from order_desk.utils.retry import retry_async

TABLE_APP_SETTINGS = "app_settings"
SALES_KEY_ROOT = "sales_url"
CACHE_PREFIX = "sales:"

PRODUCT_COLUMNS = ["articulo", "artículo", "producto", "nombre", "item", "product"]
DATE_COLUMNS = ["fecha", "hora", "date", "dia", "día"]
QTY_COLUMNS = ["cantidad", "qty", "venta", "ventas", "quantity"]
SUBTOTAL_COLUMNS = ["subtotal", "importe", "total", "monto"]
CATEGORY_COLUMNS = ["subfamilia", "categoria", "categoría", "rubro", "familia", "category"]

EXCEL_EPOCH = date(1899, 12, 30)
DATE_TEXT_RX = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")


def sales_key_for_scope(tenant_id: Optional[str] = None, branch_id: Optional[str] = None) -> str:
    tenant = (tenant_id or "").strip()
    branch = (branch_id or "").strip()
    if tenant and branch:
        return f"{SALES_KEY_ROOT}:{tenant}:{branch}"
    if tenant:
        return f"{SALES_KEY_ROOT}:{tenant}"
    return SALES_KEY_ROOT


def sales_keys_for_lookup(tenant_id: Optional[str] = None, branch_id: Optional[str] = None) -> List[str]:
    keys = []
    if tenant_id and branch_id:
        keys.append(sales_key_for_scope(tenant_id, branch_id))
    if tenant_id:
        keys.append(sales_key_for_scope(tenant_id))
    keys.append(SALES_KEY_ROOT)
    return list(dict.fromkeys(keys))


def parse_date_cell(value: Any) -> Optional[date]:
    """Datetime, Excel serial / epoch-ms number, or d/m/y text (. - / separators)"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return None if pd.isna(value) else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if pd.isna(value):
            return None
        if value < 100000:
            return EXCEL_EPOCH + timedelta(days=int(value))
        return datetime.utcfromtimestamp(value / 1000).date()
    if isinstance(value, str):
        text = NBSP_RX.sub(" ", value).strip().replace(".", "/").replace("-", "/")
        match = DATE_TEXT_RX.match(text)
        if match:
            day, month, year = (int(g) for g in match.groups())
            if year < 100:
                year += 2000
            try:
                return date(year, month, day)
            except ValueError:
                return None
    return None


def _first_present(row: Dict[str, Any], candidates: List[str]) -> Any:
    for key in candidates:
        value = row.get(key)
        if value is not None and not (isinstance(value, float) and pd.isna(value)):
            return value
    return None


def parse_sales_workbook(data: bytes) -> List[SalesRecord]:
    """Flat SalesRecord list from the first sheet; rows without product or date are skipped"""
    try:
        df = pd.read_excel(io.BytesIO(data), sheet_name=0, engine="openpyxl")
    except Exception as e:
        raise WorkbookFormatError(f"Could not read sales workbook ({e})")

    df.columns = [NBSP_RX.sub(" ", str(c)).lower().strip() for c in df.columns]
    df = df.astype(object).where(pd.notna(df), None)

    records = []
    for row in df.to_dict(orient="records"):
        product = _first_present(row, PRODUCT_COLUMNS)
        day = parse_date_cell(_first_present(row, DATE_COLUMNS))
        name = norm_text(str(product)) if product is not None else ""
        if not name or day is None:
            continue
        category = _first_present(row, CATEGORY_COLUMNS)
        records.append(SalesRecord(
            product=name,
            date=day,
            qty=to_number(_first_present(row, QTY_COLUMNS)),
            subtotal=to_nullable_number(_first_present(row, SUBTOTAL_COLUMNS)),
            category=str(category) if category is not None else None,
        ))
    log.info(f"Parsed {len(records)} sales records")
    return records


class SalesFeed:
    """Resolves, downloads, parses and caches the sales workbook for a scope"""

    def __init__(self, store: RemoteStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()

    async def resolve_location(self, tenant_id: Optional[str] = None,
                               branch_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Returns {"source": "default"|"imported", "key", "url"/"path"/"base64", "filename"}.
        """
        for key in sales_keys_for_lookup(tenant_id, branch_id):
            try:
                row = await self.store.select_one(TABLE_APP_SETTINGS, {"key": key})
            except MissingRelationError:
                break
            except OrderDeskError as e:
                log.warning(f"Reading sales location {key} failed: {e}")
                continue
            value = (row or {}).get("value") or {}
            if isinstance(value, dict) and (value.get("url") or value.get("path") or value.get("base64")):
                return {**value, "source": "imported", "key": key}
        return {
            "source": "default",
            "key": SALES_KEY_ROOT,
            "path": self.settings.sales_file_path,
            "filename": Path(self.settings.sales_file_path).name,
        }

    async def _download(self, url: str) -> bytes:
        @retry_async(max_attempts=self.settings.sales_fetch_attempts)
        async def fetch_workbook() -> bytes:
            async with httpx.AsyncClient(timeout=self.settings.sales_fetch_timeout,
                                         follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content

        return await fetch_workbook()

    async def _read(self, location: Dict[str, Any]) -> bytes:
        if location.get("base64"):
            return base64.b64decode(location["base64"])
        target = location.get("url") or location.get("path")
        if target.startswith(("http://", "https://")):
            return await self._download(target)
        return Path(target).read_bytes()

    async def load(self, tenant_id: Optional[str] = None, branch_id: Optional[str] = None) -> List[SalesRecord]:
        """Sales records for the scope; an unreadable feed yields an empty history"""
        location = await self.resolve_location(tenant_id, branch_id)
        cache_key = f"{CACHE_PREFIX}{location['key']}:{location.get('url') or location.get('path') or location.get('uploaded_at')}"
        cached = get_cached(cache_key)
        if cached is not _MISS:
            return cached
        try:
            records = parse_sales_workbook(await self._read(location))
        except (OSError, httpx.HTTPError, OrderDeskError) as e:
            log.error(f"Loading sales feed ({location.get('source')}) failed: {e}")
            return []
        set_cached(cache_key, records, self.settings.sales_cache_seconds)
        return records

    async def activate(self, tenant_id: Optional[str] = None, branch_id: Optional[str] = None,
                       location: Optional[str] = None, data: Optional[bytes] = None,
                       filename: Optional[str] = None) -> Dict[str, Any]:
        """Point the scope at a new workbook (a URL/path, or uploaded bytes)"""
        if not location and data is None:
            raise OrderDeskError("A sales workbook location or file is required")
        if data is not None:
            parse_sales_workbook(data)
        value: Dict[str, Any] = {
            "filename": filename or (Path(location).name if location else "sales.xlsx"),
            "uploaded_at": datetime.utcnow().isoformat(),
            "tenant_id": tenant_id,
            "branch_id": branch_id,
        }
        if data is not None:
            value["base64"] = base64.b64encode(data).decode("ascii")
        elif location.startswith(("http://", "https://")):
            value["url"] = location
        else:
            value["path"] = location
        key = sales_key_for_scope(tenant_id, branch_id)
        await self.store.upsert(TABLE_APP_SETTINGS, {"key": key, "value": value, "updated_at": datetime.utcnow()}, ["key"])
        clear_prefix(CACHE_PREFIX)
        log.info(f"Activated sales workbook {value['filename']} for {key}")
        return {**value, "key": key}
