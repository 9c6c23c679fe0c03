from enum import Enum


class ToolCondition(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


# Higher is better.
CONDITION_RANK = {
    ToolCondition.EXCELLENT: 4,
    ToolCondition.GOOD: 3,
    ToolCondition.FAIR: 2,
    ToolCondition.POOR: 1,
}


class BorrowingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    COMPLETED = "COMPLETED"


OPEN_BORROWING_STATES = {BorrowingStatus.ACTIVE.value, BorrowingStatus.OVERDUE.value}


class CategoryType(str, Enum):
    TOOL = "TOOL"
    MATERIAL = "MATERIAL"


class EntityType(str, Enum):
    TOOL = "TOOL"
    TOOL_UNIT = "TOOL_UNIT"
    MATERIAL = "MATERIAL"
    CATEGORY = "CATEGORY"
    BORROWING_TRANSACTION = "BORROWING_TRANSACTION"
    CONSUMPTION_TRANSACTION = "CONSUMPTION_TRANSACTION"


class ActivityAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BORROW = "BORROW"
    RETURN = "RETURN"
    CONSUME = "CONSUME"
    EXTEND = "EXTEND"
