import json
import unittest
from types import SimpleNamespace
from unittest import mock

from sqlalchemy import func, select

from support import NOW, days, fresh_session, seed_category, seed_tool

from models.enums import ToolCondition
from models.ledger_models import ActivityLog, BorrowingTransaction
from schemas.borrowings import BorrowItemDto, BorrowRequest, ReturnItemDto, ReturnRequest, UnitReturnDto
from services.borrowing_service import (
    borrow_tools,
    can_extend,
    days_overdue,
    effective_status,
    extend_borrowing,
    is_overdue,
    serialize_borrowing,
    sweep_overdue,
)
from services.result import ErrorKind
from services.return_service import return_borrowing
from services.tool_service import check_tool_invariants
from services.unit_store import SelectionPreference, list_available, list_units, set_availability, set_condition


def borrow_request(*items, due=None, borrower="Dana Ortiz", purpose="Site work"):
    return BorrowRequest(
        borrowerName=borrower,
        dueDate=due or NOW + days(7),
        purpose=purpose,
        items=list(items),
    )


def return_request(transaction, conditions=None, notes=None):
    conditions = list(conditions or [])
    items = []
    for item in transaction.BorrowingItems:
        unit_returns = []
        for borrowed in item.BorrowedUnits:
            condition = conditions.pop(0) if conditions else ToolCondition.GOOD
            unit_returns.append(UnitReturnDto(borrowedUnitID=borrowed.BorrowedUnitID, returnCondition=condition))
        items.append(ReturnItemDto(borrowingItemID=item.BorrowingItemID, unitReturns=unit_returns))
    return ReturnRequest(items=items, notes=notes)


class BorrowingTestCase(unittest.TestCase):
    def setUp(self):
        self.engine, self.db = fresh_session()
        self.category = seed_category(self.db)
        self.tool = seed_tool(self.db, self.category, total=5)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def borrow(self, quantity, tool=None, **kwargs):
        tool = tool or self.tool
        return borrow_tools(self.db, borrow_request(BorrowItemDto(toolID=tool.ToolID, quantity=quantity), **kwargs), now=NOW)

    def transaction_count(self):
        return self.db.execute(select(func.count(BorrowingTransaction.BorrowingID))).scalar()


class BorrowTests(BorrowingTestCase):
    def test_borrow_two_units(self):
        result = self.borrow(2)
        self.assertTrue(result.ok)
        transaction = result.value
        self.assertEqual(transaction.BorrowingNumber, "BR-2025-001")
        self.assertEqual(transaction.Status, "ACTIVE")
        self.assertEqual(self.tool.AvailableQuantity, 3)

        units = list_units(self.db, self.tool.ToolID)
        self.assertEqual([unit.IsAvailable for unit in units], [False, False, True, True, True])
        item = transaction.BorrowingItems[0]
        self.assertEqual(item.Quantity, 2)
        self.assertEqual([borrowed.OriginalCondition for borrowed in item.BorrowedUnits], ["GOOD", "GOOD"])
        self.assertEqual(check_tool_invariants(self.db, self.tool), [])

    def test_insufficient_units_changes_nothing(self):
        self.borrow(2)
        result = self.borrow(4)
        self.assertEqual(result.kind, ErrorKind.INSUFFICIENT_UNITS)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 3)
        self.assertEqual(self.transaction_count(), 1)
        self.assertEqual(sum(unit.IsAvailable for unit in list_units(self.db, self.tool.ToolID)), 3)

    def test_multi_tool_request_is_all_or_nothing(self):
        other = seed_tool(self.db, self.category, total=1, name="Laser Level")
        request = borrow_request(
            BorrowItemDto(toolID=self.tool.ToolID, quantity=2),
            BorrowItemDto(toolID=other.ToolID, quantity=2),
        )
        result = borrow_tools(self.db, request, now=NOW)
        self.assertEqual(result.kind, ErrorKind.INSUFFICIENT_UNITS)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 5)
        self.assertTrue(all(unit.IsAvailable for unit in list_units(self.db, self.tool.ToolID)))
        self.assertEqual(self.transaction_count(), 0)

    def test_explicit_units(self):
        units = list_units(self.db, self.tool.ToolID)
        chosen = [units[3].ToolUnitID, units[1].ToolUnitID]
        result = borrow_tools(
            self.db, borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=chosen)), now=NOW
        )
        self.assertTrue(result.ok)
        borrowed = [unit.ToolUnitID for unit in result.value.BorrowingItems[0].BorrowedUnits]
        self.assertEqual(sorted(borrowed), sorted(chosen))

    def test_explicit_unit_already_lent(self):
        unit_id = list_units(self.db, self.tool.ToolID)[0].ToolUnitID
        first = borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=[unit_id]))
        self.assertTrue(borrow_tools(self.db, first, now=NOW).ok)
        second = borrow_tools(self.db, first, now=NOW)
        self.assertEqual(second.kind, ErrorKind.UNIT_UNAVAILABLE)
        self.assertEqual(self.tool.AvailableQuantity, 4)

    def test_availability_flip_is_compare_and_swap(self):
        unit_id = list_units(self.db, self.tool.ToolID)[0].ToolUnitID
        self.assertTrue(set_availability(self.db, unit_id, False, NOW))
        self.assertFalse(set_availability(self.db, unit_id, False, NOW))
        self.db.rollback()

    def test_quantity_borrow_moves_past_unit_claimed_concurrently(self):
        snapshot = list_available(self.db, self.tool.ToolID)
        first = self.borrow(1)
        self.assertTrue(first.ok)

        with mock.patch("services.borrowing_service.list_available", return_value=snapshot):
            second = self.borrow(1)

        self.assertTrue(second.ok)
        first_unit = first.value.BorrowingItems[0].BorrowedUnits[0].ToolUnitID
        second_unit = second.value.BorrowingItems[0].BorrowedUnits[0].ToolUnitID
        self.assertEqual(first_unit, snapshot[0].ToolUnitID)
        self.assertEqual(second_unit, snapshot[1].ToolUnitID)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 3)
        self.assertEqual(check_tool_invariants(self.db, self.tool), [])

    def test_quantity_borrow_fails_when_every_candidate_was_claimed(self):
        snapshot = list_available(self.db, self.tool.ToolID)[:1]
        self.assertTrue(self.borrow(1).ok)

        with mock.patch("services.borrowing_service.list_available", return_value=snapshot):
            result = self.borrow(1)

        self.assertEqual(result.kind, ErrorKind.INSUFFICIENT_UNITS)
        self.assertEqual(self.transaction_count(), 1)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 4)
        self.assertEqual(check_tool_invariants(self.db, self.tool), [])

    def test_explicit_borrows_of_distinct_units_both_succeed(self):
        units = list_units(self.db, self.tool.ToolID)
        pair = [units[0].ToolUnitID, units[1].ToolUnitID]
        first = borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=pair))
        second = borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=[units[2].ToolUnitID]))
        self.assertTrue(borrow_tools(self.db, first, now=NOW).ok)
        self.assertTrue(borrow_tools(self.db, second, now=NOW).ok)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 2)
        self.assertEqual(check_tool_invariants(self.db, self.tool), [])

    def test_unknown_preference_is_rejected(self):
        request = borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=1))
        result = borrow_tools(self.db, request, now=NOW, preference="RANDOM")
        self.assertEqual(result.kind, ErrorKind.INVALID_INPUT)
        self.assertEqual(self.transaction_count(), 0)

    def test_same_tool_twice_merges_into_one_item(self):
        request = borrow_request(
            BorrowItemDto(toolID=self.tool.ToolID, quantity=1),
            BorrowItemDto(toolID=self.tool.ToolID, quantity=2),
        )
        transaction = borrow_tools(self.db, request, now=NOW).value
        self.assertEqual(len(transaction.BorrowingItems), 1)
        item = transaction.BorrowingItems[0]
        self.assertEqual(item.Quantity, 3)
        self.assertEqual(len({borrowed.ToolUnitID for borrowed in item.BorrowedUnits}), 3)
        self.assertEqual(self.tool.AvailableQuantity, 2)

    def test_worst_first_preference(self):
        target = list_units(self.db, self.tool.ToolID)[2]
        set_condition(self.db, target.ToolUnitID, ToolCondition.POOR, now=NOW)
        request = borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=1))
        transaction = borrow_tools(self.db, request, now=NOW, preference=SelectionPreference.WORST_FIRST).value
        item = transaction.BorrowingItems[0]
        self.assertEqual(item.BorrowedUnits[0].ToolUnitID, target.ToolUnitID)
        self.assertEqual(item.OriginalCondition, "POOR")

    def test_validation_errors(self):
        other = seed_tool(self.db, self.category, total=1, name="Laser Level")
        foreign_unit = list_units(self.db, other.ToolID)[0].ToolUnitID
        unit_id = list_units(self.db, self.tool.ToolID)[0].ToolUnitID
        cases = [
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=1), borrower=" "), ErrorKind.INVALID_INPUT),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=1), purpose=""), ErrorKind.INVALID_INPUT),
            (borrow_request(), ErrorKind.INVALID_INPUT),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=1), due=NOW - days(1)), ErrorKind.INVALID_DATE),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID)), ErrorKind.INVALID_INPUT),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=[foreign_unit])), ErrorKind.INVALID_INPUT),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=[unit_id, unit_id])), ErrorKind.INVALID_INPUT),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, unitIDs=[4040])), ErrorKind.NOT_FOUND),
            (borrow_request(BorrowItemDto(toolID=999, quantity=1)), ErrorKind.NOT_FOUND),
            (borrow_request(BorrowItemDto(toolID=self.tool.ToolID, quantity=0)), ErrorKind.INVALID_QUANTITY),
        ]
        for request, kind in cases:
            with self.subTest(kind=kind, request=request):
                self.assertEqual(borrow_tools(self.db, request, now=NOW).kind, kind)
        self.assertEqual(self.transaction_count(), 0)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 5)

    def test_borrow_is_audited(self):
        transaction = self.borrow(2).value
        entry = self.db.execute(select(ActivityLog).where(ActivityLog.Action == "BORROW")).scalars().one()
        self.assertEqual(entry.EntityID, transaction.BorrowingID)
        self.assertEqual(json.loads(entry.Metadata), {"itemCount": 1, "totalQuantity": 2})


class ReturnTests(BorrowingTestCase):
    def test_return_with_mixed_conditions(self):
        transaction = self.borrow(2).value
        result = return_borrowing(
            self.db, transaction.BorrowingID, return_request(transaction, ["POOR", "GOOD"]), now=NOW + days(2)
        )
        self.assertTrue(result.ok)
        self.assertEqual(transaction.Status, "COMPLETED")
        self.assertEqual(transaction.ReturnDate, NOW + days(2))
        self.assertEqual(self.tool.AvailableQuantity, 5)

        units = list_units(self.db, self.tool.ToolID)
        self.assertEqual([unit.Condition for unit in units[:2]], ["POOR", "GOOD"])
        self.assertTrue(all(unit.IsAvailable for unit in units))
        item = transaction.BorrowingItems[0]
        self.assertEqual(item.ReturnCondition, "POOR")
        self.assertEqual(item.ReturnDate, NOW + days(2))
        self.assertEqual(check_tool_invariants(self.db, self.tool), [])

    def test_second_return_is_rejected_without_counter_change(self):
        transaction = self.borrow(3).value
        request = return_request(transaction)
        self.assertTrue(return_borrowing(self.db, transaction.BorrowingID, request, now=NOW).ok)
        again = return_borrowing(self.db, transaction.BorrowingID, request, now=NOW)
        self.assertEqual(again.kind, ErrorKind.ALREADY_COMPLETED)
        self.db.refresh(self.tool)
        self.assertEqual(self.tool.AvailableQuantity, 5)

    def test_missing_unit_is_incomplete(self):
        transaction = self.borrow(2).value
        request = return_request(transaction)
        request.items[0].unitReturns.pop()
        result = return_borrowing(self.db, transaction.BorrowingID, request, now=NOW)
        self.assertEqual(result.kind, ErrorKind.INCOMPLETE_RETURN)
        self.assertEqual(len(result.error.details["missingBorrowedUnitIDs"]), 1)
        self.db.refresh(transaction)
        self.db.refresh(self.tool)
        self.assertEqual(transaction.Status, "ACTIVE")
        self.assertEqual(self.tool.AvailableQuantity, 3)

    def test_duplicate_and_foreign_units_are_incomplete(self):
        first = self.borrow(2).value
        second = self.borrow(1).value

        duplicate = return_request(first)
        duplicate.items[0].unitReturns[1] = duplicate.items[0].unitReturns[0]
        self.assertEqual(
            return_borrowing(self.db, first.BorrowingID, duplicate, now=NOW).kind, ErrorKind.INCOMPLETE_RETURN
        )

        foreign = return_request(first)
        foreign.items[0].unitReturns.append(return_request(second).items[0].unitReturns[0])
        self.assertEqual(
            return_borrowing(self.db, first.BorrowingID, foreign, now=NOW).kind, ErrorKind.INCOMPLETE_RETURN
        )

        wrong_item = return_request(first)
        wrong_item.items[0].borrowingItemID = second.BorrowingItems[0].BorrowingItemID
        self.assertEqual(
            return_borrowing(self.db, first.BorrowingID, wrong_item, now=NOW).kind, ErrorKind.INCOMPLETE_RETURN
        )

    def test_unknown_transaction(self):
        self.assertEqual(return_borrowing(self.db, 55, ReturnRequest(), now=NOW).kind, ErrorKind.NOT_FOUND)

    def test_return_notes_are_appended(self):
        transaction = self.borrow(1).value
        return_borrowing(self.db, transaction.BorrowingID, return_request(transaction, notes="all clean"), now=NOW)
        self.assertEqual(transaction.Notes, "Return Notes: all clean")

    def test_round_trip_restores_availability(self):
        other = seed_tool(self.db, self.category, total=3, name="Laser Level")
        request = borrow_request(
            BorrowItemDto(toolID=self.tool.ToolID, quantity=4),
            BorrowItemDto(toolID=other.ToolID, quantity=3),
        )
        transaction = borrow_tools(self.db, request, now=NOW).value
        self.assertEqual((self.tool.AvailableQuantity, other.AvailableQuantity), (1, 0))

        conditions = ["EXCELLENT", "FAIR", "POOR", "GOOD", "GOOD", "FAIR", "GOOD"]
        result = return_borrowing(
            self.db, transaction.BorrowingID, return_request(transaction, conditions), now=NOW + days(1)
        )
        self.assertTrue(result.ok)
        self.assertEqual((self.tool.AvailableQuantity, other.AvailableQuantity), (5, 3))
        for tool in (self.tool, other):
            self.assertEqual(check_tool_invariants(self.db, tool), [])
        self.assertEqual([item.ReturnCondition for item in transaction.BorrowingItems], ["POOR", "FAIR"])


class OverdueTests(unittest.TestCase):
    def _transaction(self, status="ACTIVE", due=NOW):
        return SimpleNamespace(Status=status, DueDate=due)

    def test_predicates_before_due_date(self):
        tx = self._transaction(due=NOW + days(1))
        self.assertFalse(is_overdue(tx, NOW))
        self.assertEqual(days_overdue(tx, NOW), 0)
        self.assertEqual(effective_status(tx, NOW), "ACTIVE")
        self.assertTrue(can_extend(tx, NOW))

    def test_predicates_after_due_date(self):
        tx = self._transaction()
        later = NOW + days(2) + days(1) / 8
        self.assertTrue(is_overdue(tx, later))
        self.assertEqual(days_overdue(tx, later), 2)
        self.assertEqual(effective_status(tx, later), "OVERDUE")
        self.assertTrue(can_extend(tx, later))

    def test_completed_is_never_overdue(self):
        tx = self._transaction(status="COMPLETED")
        later = NOW + days(5)
        self.assertFalse(is_overdue(tx, later))
        self.assertEqual(effective_status(tx, later), "COMPLETED")
        self.assertFalse(can_extend(tx, later))


class SweepAndExtensionTests(BorrowingTestCase):
    def test_sweep_promotes_past_due(self):
        late = self.borrow(1, due=NOW + days(1)).value
        on_time = self.borrow(1, due=NOW + days(10)).value
        self.assertEqual(sweep_overdue(self.db, NOW + days(2)).value, 1)
        self.assertEqual((late.Status, on_time.Status), ("OVERDUE", "ACTIVE"))
        self.assertEqual(sweep_overdue(self.db, NOW + days(2)).value, 0)

    def test_extend_overdue_transaction(self):
        transaction = self.borrow(1, due=NOW + days(1)).value
        later = NOW + days(3)
        sweep_overdue(self.db, later)
        self.assertEqual(transaction.Status, "OVERDUE")

        result = extend_borrowing(self.db, transaction.BorrowingID, later + days(1), "Job overran", now=later)
        self.assertTrue(result.ok)
        self.assertEqual(transaction.Status, "ACTIVE")
        self.assertEqual(transaction.DueDate, later + days(1))
        self.assertIn("Extended on 2025-03-13: Job overran", transaction.Notes)

        entry = self.db.execute(select(ActivityLog).where(ActivityLog.Action == "EXTEND")).scalars().one()
        metadata = json.loads(entry.Metadata)
        self.assertEqual(metadata["reason"], "Job overran")
        self.assertEqual(metadata["extensionDays"], 3)

    def test_extension_rules(self):
        transaction = self.borrow(1).value
        tx_id = transaction.BorrowingID
        cases = [
            (NOW - days(1), "reason", ErrorKind.INVALID_DATE),
            (NOW + days(5), "reason", ErrorKind.INVALID_DATE),
            (NOW + days(31), "reason", ErrorKind.INVALID_DATE),
            (NOW + days(9), "  ", ErrorKind.INVALID_INPUT),
        ]
        for new_due, reason, kind in cases:
            with self.subTest(new_due=new_due, reason=reason):
                self.assertEqual(extend_borrowing(self.db, tx_id, new_due, reason, now=NOW).kind, kind)
        self.db.refresh(transaction)
        self.assertEqual(transaction.DueDate, NOW + days(7))

    def test_extension_limit_is_configurable(self):
        transaction = self.borrow(1).value
        result = extend_borrowing(
            self.db, transaction.BorrowingID, NOW + days(40), "Long job", now=NOW, max_extension_days=None
        )
        self.assertTrue(result.ok)

    def test_zero_day_limit_allows_no_extension(self):
        transaction = self.borrow(1).value
        result = extend_borrowing(
            self.db, transaction.BorrowingID, NOW + days(8), "One more day", now=NOW, max_extension_days=0
        )
        self.assertEqual(result.kind, ErrorKind.INVALID_DATE)
        self.db.refresh(transaction)
        self.assertEqual(transaction.DueDate, NOW + days(7))

    def test_completed_cannot_be_extended(self):
        transaction = self.borrow(1).value
        return_borrowing(self.db, transaction.BorrowingID, return_request(transaction), now=NOW)
        result = extend_borrowing(self.db, transaction.BorrowingID, NOW + days(9), "late", now=NOW)
        self.assertEqual(result.kind, ErrorKind.INVALID_STATE)

    def test_unknown_transaction(self):
        self.assertEqual(extend_borrowing(self.db, 9, NOW + days(9), "x", now=NOW).kind, ErrorKind.NOT_FOUND)

    def test_read_model(self):
        transaction = self.borrow(2, due=NOW + days(1)).value
        payload = serialize_borrowing(transaction, NOW + days(4))
        self.assertEqual(payload["status"], "OVERDUE")
        self.assertTrue(payload["isOverdue"])
        self.assertEqual(payload["daysOverdue"], 3)
        self.assertEqual(payload["totalItems"], 2)
        self.assertEqual(payload["itemsReturned"], 0)
        self.assertTrue(payload["canExtend"])
        self.assertEqual(payload["borrowingItems"][0]["toolName"], "Cordless Drill")


if __name__ == "__main__":
    unittest.main()
