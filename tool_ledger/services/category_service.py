from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.enums import ActivityAction, CategoryType, EntityType
from models.ledger_models import Category, Material, Tool
from services.activity_service import log_activity
from services.result import ErrorKind, LedgerError, Result, run_atomic


def require_category(db: Session, category_id: int, expected_type: CategoryType) -> Category:
    category = db.get(Category, category_id)
    if not category:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Category {category_id} not found.", {"categoryID": category_id})
    if category.CategoryType != expected_type.value:
        raise LedgerError(
            ErrorKind.INVALID_INPUT,
            f"Category must be of type {expected_type.value}.",
            {"categoryID": category_id, "categoryType": category.CategoryType},
        )
    return category


def create_category(
    db: Session,
    name: str,
    category_type: CategoryType | str,
    description: str | None = None,
    now: datetime | None = None,
) -> Result[Category]:
    stamp = now or datetime.now()

    def work() -> Category:
        clean_name = (name or "").strip()
        if not clean_name:
            raise LedgerError(ErrorKind.INVALID_INPUT, "Category name is required.")
        kind = _coerce_category_type(category_type)
        existing = db.execute(select(Category).where(Category.CategoryName == clean_name)).scalars().first()
        if existing:
            raise LedgerError(ErrorKind.CONFLICT, f"Category '{clean_name}' already exists.")
        category = Category(
            CategoryName=clean_name,
            CategoryType=kind.value,
            Description=description,
            CreatedDate=stamp,
        )
        db.add(category)
        db.flush()
        log_activity(
            db,
            EntityType.CATEGORY,
            category.CategoryID,
            ActivityAction.CREATE,
            new_values=serialize_category(category),
            created_at=stamp,
        )
        return category

    return run_atomic(db, "create_category", work)


def _coerce_category_type(category_type: CategoryType | str) -> CategoryType:
    if isinstance(category_type, CategoryType):
        return category_type
    try:
        return CategoryType(str(category_type).strip().upper())
    except ValueError as exc:
        raise LedgerError(ErrorKind.INVALID_INPUT, f"Unknown category type: {category_type}") from exc


def get_category_or_raise(db: Session, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if not category:
        raise LedgerError(ErrorKind.NOT_FOUND, f"Category {category_id} not found.", {"categoryID": category_id})
    return category


def category_usage(db: Session, category_id: int) -> tuple[int, int]:
    tools = db.execute(select(func.count(Tool.ToolID)).where(Tool.CategoryID == category_id)).scalar() or 0
    materials = db.execute(
        select(func.count(Material.MaterialID)).where(Material.CategoryID == category_id)
    ).scalar() or 0
    return tools, materials


def update_category(
    db: Session,
    category_id: int,
    name: str | None = None,
    category_type: CategoryType | str | None = None,
    description: str | None = None,
    now: datetime | None = None,
) -> Result[Category]:
    stamp = now or datetime.now()

    def work() -> Category:
        category = get_category_or_raise(db, category_id)
        before = serialize_category(category)
        if name is not None:
            clean_name = name.strip()
            if not clean_name:
                raise LedgerError(ErrorKind.INVALID_INPUT, "Category name is required.")
            if clean_name != category.CategoryName:
                clash = db.execute(select(Category).where(Category.CategoryName == clean_name)).scalars().first()
                if clash:
                    raise LedgerError(ErrorKind.CONFLICT, f"Category '{clean_name}' already exists.")
            category.CategoryName = clean_name
        if category_type is not None:
            kind = _coerce_category_type(category_type)
            if kind.value != category.CategoryType:
                tools, materials = category_usage(db, category_id)
                if tools or materials:
                    # Tools need a TOOL category and materials a MATERIAL one.
                    raise LedgerError(
                        ErrorKind.CONFLICT,
                        "Cannot change the type of a category that is in use.",
                        {"categoryID": category_id, "toolCount": tools, "materialCount": materials},
                    )
                category.CategoryType = kind.value
        if description is not None:
            category.Description = description
        db.flush()
        log_activity(
            db,
            EntityType.CATEGORY,
            category.CategoryID,
            ActivityAction.UPDATE,
            old_values=before,
            new_values=serialize_category(category),
            created_at=stamp,
        )
        return category

    return run_atomic(db, "update_category", work)


def delete_category(db: Session, category_id: int, now: datetime | None = None) -> Result[None]:
    stamp = now or datetime.now()

    def work() -> None:
        category = get_category_or_raise(db, category_id)
        tools, materials = category_usage(db, category_id)
        if tools or materials:
            raise LedgerError(
                ErrorKind.CONFLICT,
                f"Cannot delete category. It has {tools} tools and {materials} materials associated with it.",
                {"categoryID": category_id, "toolCount": tools, "materialCount": materials},
            )
        log_activity(
            db,
            EntityType.CATEGORY,
            category_id,
            ActivityAction.DELETE,
            old_values=serialize_category(category),
            created_at=stamp,
        )
        db.delete(category)

    return run_atomic(db, "delete_category", work)


def list_categories(db: Session, category_type: CategoryType | None = None) -> list[Category]:
    stmt = select(Category).order_by(Category.CategoryName)
    if category_type:
        stmt = stmt.where(Category.CategoryType == category_type.value)
    return list(db.execute(stmt).scalars().all())


def serialize_category(category: Category, usage: tuple[int, int] | None = None) -> dict:
    payload = {
        "categoryID": category.CategoryID,
        "categoryName": category.CategoryName,
        "categoryType": category.CategoryType,
        "description": category.Description,
        "createdDate": category.CreatedDate,
    }
    if usage is not None:
        payload["toolCount"], payload["materialCount"] = usage
    return payload
