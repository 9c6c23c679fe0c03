import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_ledger_db
from models.enums import CategoryType, EntityType
from models.ledger_models import BorrowingTransaction, Tool
from schemas.borrowings import BorrowRequest, ExtensionRequest, ReturnRequest
from schemas.materials import ConsumeRequest, MaterialCreate, MaterialQuantityUpdate, MaterialUpdate
from schemas.tools import (
    BulkUnitConditionRequest,
    CategoryCreate,
    CategoryUpdate,
    QuantityAdjustmentRequest,
    ToolCreate,
    ToolUpdate,
    UnitConditionUpdate,
)
from schemas.transactions import TransactionRequest
from services.activity_service import list_activity, serialize_activity
from services.borrowing_service import (
    extend_borrowing,
    get_borrowing,
    list_borrowings,
    serialize_borrowing,
    sweep_overdue,
)
from services.category_service import (
    category_usage,
    create_category,
    delete_category,
    get_category_or_raise,
    list_categories,
    serialize_category,
    update_category,
)
from services.consumption_service import consume_materials, get_consumption, list_consumptions, serialize_consumption
from services.material_service import (
    create_material,
    delete_material,
    get_material_or_raise,
    list_materials,
    serialize_material,
    update_material_details,
    update_material_quantity,
)
from services.result import Err, ErrorKind, LedgerError
from services.return_service import return_borrowing
from services.tool_service import (
    adjust_tool_quantity,
    create_tool,
    delete_tool,
    has_active_borrowing,
    list_tools,
    serialize_tool,
    update_tool_details,
)
from services.transaction_service import submit_transaction
from services.unit_store import (
    SelectionPreference,
    bulk_update_conditions,
    list_units,
    serialize_unit,
    set_condition,
    unit_history,
)

LOGGER = logging.getLogger("tool_ledger.api")

app = FastAPI(title="Tool Ledger")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

UNIT_SELECTION_PREFERENCE = SelectionPreference(
    (os.environ.get("UNIT_SELECTION_PREFERENCE") or SelectionPreference.BEST_FIRST.value).strip().upper()
)
MAX_EXTENSION_DAYS = int(os.environ.get("MAX_EXTENSION_DAYS") or "30")
OVERDUE_SWEEP_ON_READ = _parse_bool_env("OVERDUE_SWEEP_ON_READ", "true")

ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNIT_UNAVAILABLE: 409,
    ErrorKind.ALREADY_COMPLETED: 409,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.INVALID_QUANTITY: 400,
    ErrorKind.INVALID_DATE: 400,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INCOMPLETE_RETURN: 400,
    ErrorKind.INSUFFICIENT_UNITS: 400,
    ErrorKind.INSUFFICIENT_STOCK: 400,
    ErrorKind.STORAGE_ERROR: 503,
}


def _http_error(error: LedgerError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(error.kind, 400),
        detail={
            "kind": error.kind.value,
            "message": error.message,
            "details": jsonable_encoder(error.details),
        },
    )


def _unwrap(result):
    if isinstance(result, Err):
        raise _http_error(result.error)
    return result.value


def _sweep_before_read(db: Session) -> None:
    if OVERDUE_SWEEP_ON_READ:
        outcome = sweep_overdue(db, datetime.now())
        if isinstance(outcome, Err):
            LOGGER.warning("overdue sweep skipped: %s", outcome.error.message)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_ledger_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/categories")
def get_categories(category_type: CategoryType | None = Query(None, alias="type"), db: Session = Depends(get_ledger_db)):
    return [serialize_category(category) for category in list_categories(db, category_type)]


@app.post("/api/categories", status_code=201)
def post_category(payload: CategoryCreate, db: Session = Depends(get_ledger_db)):
    category = _unwrap(create_category(db, payload.categoryName, payload.categoryType, payload.description))
    return serialize_category(category)


@app.get("/api/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_ledger_db)):
    try:
        category = get_category_or_raise(db, category_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return serialize_category(category, usage=category_usage(db, category_id))


@app.put("/api/categories/{category_id}")
def put_category(category_id: int, payload: CategoryUpdate, db: Session = Depends(get_ledger_db)):
    category = _unwrap(
        update_category(
            db,
            category_id,
            name=payload.categoryName,
            category_type=payload.categoryType,
            description=payload.description,
        )
    )
    return serialize_category(category, usage=category_usage(db, category_id))


@app.delete("/api/categories/{category_id}")
def remove_category(category_id: int, db: Session = Depends(get_ledger_db)):
    _unwrap(delete_category(db, category_id))
    return {"message": "Category deleted"}


@app.get("/api/tools")
def get_tools(availability: str | None = Query(None), db: Session = Depends(get_ledger_db)):
    return [serialize_tool(tool) for tool in list_tools(db, availability)]


@app.get("/api/tools/{tool_id}")
def get_tool(tool_id: int, db: Session = Depends(get_ledger_db)):
    tool = db.get(Tool, tool_id)
    if not tool:
        raise _http_error(LedgerError(ErrorKind.NOT_FOUND, "Tool not found", {"toolID": tool_id}))
    return serialize_tool(tool, has_active=has_active_borrowing(db, tool_id), include_units=True)


@app.post("/api/tools", status_code=201)
def post_tool(payload: ToolCreate, db: Session = Depends(get_ledger_db)):
    tool = _unwrap(
        create_tool(
            db,
            name=payload.toolName,
            category_id=payload.categoryID,
            total_quantity=payload.totalQuantity,
            initial_condition=payload.initialCondition,
            location=payload.location,
            supplier=payload.supplier,
            purchase_date=payload.purchaseDate,
            purchase_price=payload.purchasePrice,
            notes=payload.notes,
            actor_name=payload.actorName,
        )
    )
    return serialize_tool(tool, include_units=True)


@app.put("/api/tools/{tool_id}")
def put_tool(tool_id: int, payload: ToolUpdate, db: Session = Depends(get_ledger_db)):
    changes = payload.model_dump(exclude_unset=True)
    actor_name = changes.pop("actorName", None)
    tool = _unwrap(update_tool_details(db, tool_id, changes, actor_name=actor_name))
    return serialize_tool(tool, include_units=True)


@app.put("/api/tools/{tool_id}/quantity")
def put_tool_quantity(tool_id: int, payload: QuantityAdjustmentRequest, db: Session = Depends(get_ledger_db)):
    tool = _unwrap(adjust_tool_quantity(db, tool_id, payload.totalQuantity, actor_name=payload.actorName))
    return {
        "toolID": tool.ToolID,
        "totalQuantity": tool.TotalQuantity,
        "availableQuantity": tool.AvailableQuantity,
    }


@app.delete("/api/tools/{tool_id}")
def remove_tool(tool_id: int, actor_name: str | None = Query(None, alias="actorName"), db: Session = Depends(get_ledger_db)):
    _unwrap(delete_tool(db, tool_id, actor_name=actor_name))
    return {"message": "Tool deleted"}


@app.get("/api/tools/{tool_id}/units")
def get_tool_units(
    tool_id: int,
    include_retired: bool = Query(False, alias="includeRetired"),
    db: Session = Depends(get_ledger_db),
):
    if not db.get(Tool, tool_id):
        raise _http_error(LedgerError(ErrorKind.NOT_FOUND, "Tool not found", {"toolID": tool_id}))
    return [serialize_unit(unit) for unit in list_units(db, tool_id, include_retired)]


@app.get("/api/tools/{tool_id}/activity")
def get_tool_activity(tool_id: int, db: Session = Depends(get_ledger_db)):
    return [serialize_activity(entry) for entry in list_activity(db, EntityType.TOOL, tool_id)]


@app.patch("/api/units/{unit_id}")
def patch_unit(unit_id: int, payload: UnitConditionUpdate, db: Session = Depends(get_ledger_db)):
    unit = _unwrap(set_condition(db, unit_id, payload.condition, payload.notes))
    return serialize_unit(unit)


@app.post("/api/units/bulk-update")
def bulk_update_units(payload: BulkUnitConditionRequest, db: Session = Depends(get_ledger_db)):
    if not payload.units:
        raise HTTPException(status_code=400, detail="No units supplied.")
    updates = [(entry.unitID, entry.condition, entry.notes) for entry in payload.units]
    units = _unwrap(bulk_update_conditions(db, updates))
    return {"updatedCount": len(units), "units": [serialize_unit(unit) for unit in units]}


@app.get("/api/units/{unit_id}/history")
def get_unit_history(unit_id: int, db: Session = Depends(get_ledger_db)):
    return _unwrap(unit_history(db, unit_id))


@app.get("/api/borrowings")
def get_borrowings(
    status: str | None = Query(None),
    search: str | None = Query(None),
    db: Session = Depends(get_ledger_db),
):
    _sweep_before_read(db)
    statuses = [item.strip().upper() for item in status.split(",") if item.strip()] if status else None
    now = datetime.now()
    return [serialize_borrowing(tx, now) for tx in list_borrowings(db, statuses, search)]


@app.post("/api/borrowings/sweep-overdue")
def post_sweep_overdue(db: Session = Depends(get_ledger_db)):
    return {"updatedCount": _unwrap(sweep_overdue(db, datetime.now()))}


@app.get("/api/borrowings/{borrowing_id}")
def get_borrowing_item(borrowing_id: int, db: Session = Depends(get_ledger_db)):
    _sweep_before_read(db)
    transaction = _unwrap(get_borrowing(db, borrowing_id))
    return serialize_borrowing(transaction, datetime.now())


def _borrowing_response(transaction: BorrowingTransaction) -> dict:
    payload = serialize_borrowing(transaction, datetime.now())
    payload["transactionID"] = transaction.BorrowingID
    return payload


@app.post("/api/borrowings", status_code=201)
def post_borrowing(payload: BorrowRequest, db: Session = Depends(get_ledger_db)):
    transaction = _unwrap(
        submit_transaction(db, payload, now=datetime.now(), preference=UNIT_SELECTION_PREFERENCE)
    )
    return _borrowing_response(transaction)


@app.post("/api/borrowings/{borrowing_id}/return")
def post_return(borrowing_id: int, payload: ReturnRequest, db: Session = Depends(get_ledger_db)):
    transaction = _unwrap(return_borrowing(db, borrowing_id, payload, now=datetime.now()))
    return {"message": "Tools returned successfully", "borrowing": serialize_borrowing(transaction, datetime.now())}


@app.post("/api/borrowings/{borrowing_id}/extend")
def post_extension(borrowing_id: int, payload: ExtensionRequest, db: Session = Depends(get_ledger_db)):
    transaction = _unwrap(
        extend_borrowing(
            db,
            borrowing_id,
            payload.newDueDate,
            payload.reason,
            now=datetime.now(),
            max_extension_days=MAX_EXTENSION_DAYS,
        )
    )
    return {"message": "Borrowing extended", "newDueDate": transaction.DueDate}


@app.get("/api/materials")
def get_materials(low_stock: bool = Query(False, alias="lowStock"), db: Session = Depends(get_ledger_db)):
    return [serialize_material(material) for material in list_materials(db, low_stock_only=low_stock)]


@app.get("/api/materials/low-stock")
def get_low_stock_materials(db: Session = Depends(get_ledger_db)):
    return [serialize_material(material) for material in list_materials(db, low_stock_only=True)]


@app.get("/api/materials/{material_id}")
def get_material(material_id: int, db: Session = Depends(get_ledger_db)):
    try:
        material = get_material_or_raise(db, material_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return serialize_material(material)


@app.post("/api/materials", status_code=201)
def post_material(payload: MaterialCreate, db: Session = Depends(get_ledger_db)):
    material = _unwrap(
        create_material(
            db,
            name=payload.materialName,
            category_id=payload.categoryID,
            current_quantity=payload.currentQuantity,
            threshold_quantity=payload.thresholdQuantity,
            unit=payload.unit,
            location=payload.location,
            supplier=payload.supplier,
            unit_price=payload.unitPrice,
            notes=payload.notes,
            actor_name=payload.actorName,
        )
    )
    return serialize_material(material)


@app.put("/api/materials/{material_id}")
def put_material(material_id: int, payload: MaterialUpdate, db: Session = Depends(get_ledger_db)):
    changes = payload.model_dump(exclude_unset=True)
    actor_name = changes.pop("actorName", None)
    material = _unwrap(update_material_details(db, material_id, changes, actor_name=actor_name))
    return serialize_material(material)


@app.delete("/api/materials/{material_id}")
def remove_material(
    material_id: int,
    actor_name: str | None = Query(None, alias="actorName"),
    db: Session = Depends(get_ledger_db),
):
    _unwrap(delete_material(db, material_id, actor_name=actor_name))
    return {"message": "Material deleted"}


@app.put("/api/materials/{material_id}/quantity")
def put_material_quantity(material_id: int, payload: MaterialQuantityUpdate, db: Session = Depends(get_ledger_db)):
    material = _unwrap(
        update_material_quantity(
            db,
            material_id,
            new_current=payload.currentQuantity,
            new_threshold=payload.thresholdQuantity,
            actor_name=payload.actorName,
        )
    )
    return serialize_material(material)


@app.get("/api/consumptions")
def get_consumptions(consumer: str | None = Query(None), db: Session = Depends(get_ledger_db)):
    return [serialize_consumption(tx) for tx in list_consumptions(db, consumer)]


@app.get("/api/consumptions/{consumption_id}")
def get_consumption_item(consumption_id: int, db: Session = Depends(get_ledger_db)):
    transaction = get_consumption(db, consumption_id)
    if not transaction:
        raise _http_error(
            LedgerError(ErrorKind.NOT_FOUND, "Consumption not found", {"consumptionID": consumption_id})
        )
    return serialize_consumption(transaction)


@app.post("/api/consumptions", status_code=201)
def post_consumption(payload: ConsumeRequest, db: Session = Depends(get_ledger_db)):
    transaction = _unwrap(consume_materials(db, payload, now=datetime.now()))
    response = serialize_consumption(transaction)
    response["transactionID"] = transaction.ConsumptionID
    return response


@app.post("/api/transactions", status_code=201)
def post_transaction(payload: TransactionRequest, db: Session = Depends(get_ledger_db)):
    transaction = _unwrap(
        submit_transaction(db, payload, now=datetime.now(), preference=UNIT_SELECTION_PREFERENCE)
    )
    if isinstance(transaction, BorrowingTransaction):
        return _borrowing_response(transaction)
    response = serialize_consumption(transaction)
    response["transactionID"] = transaction.ConsumptionID
    return response
