import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

os.environ.setdefault("TOOL_LEDGER_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base  # noqa: E402
from db.session import build_engine, build_sessionmaker  # noqa: E402
import models.ledger_models  # noqa: E402,F401
from models.enums import CategoryType, ToolCondition  # noqa: E402
from services.category_service import create_category  # noqa: E402
from services.tool_service import create_tool  # noqa: E402

NOW = datetime(2025, 3, 10, 9, 0, 0)


def fresh_session():
    """Session bound to a brand-new in-memory database with every table created."""
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine, build_sessionmaker(engine)()


def seed_category(db, name="Power Tools", category_type=CategoryType.TOOL):
    return create_category(db, name, category_type, now=NOW).value


def seed_tool(db, category, total=5, name="Cordless Drill", condition=ToolCondition.GOOD):
    return create_tool(
        db,
        name=name,
        category_id=category.CategoryID,
        total_quantity=total,
        initial_condition=condition,
        now=NOW,
    ).value


def days(count):
    return timedelta(days=count)
