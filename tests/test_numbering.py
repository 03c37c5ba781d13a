from __future__ import annotations

import unittest

from sqlalchemy.dialects import postgresql

from app.models import DocumentCounter, Requisition, RequisitionStatus
from app.services.numbering import (
    counter_lock_query,
    format_number,
    next_document_number,
    next_item_code,
    parse_sequence,
)
from tests.db_support import DatabaseTestCase, make_item, make_user


class NumberFormatTests(unittest.TestCase):
    def test_format_pads_sequence(self) -> None:
        self.assertEqual(format_number('GRN', 2024, 7), 'GRN-2024-0007')

    def test_parse_sequence(self) -> None:
        self.assertEqual(parse_sequence('REQ-2024-0042'), 42)
        self.assertEqual(parse_sequence('ITM-00012'), 12)
        self.assertIsNone(parse_sequence('REQ-2024-abc'))
        self.assertIsNone(parse_sequence(None))


class NextNumberTests(DatabaseTestCase):
    def test_first_number_of_year(self) -> None:
        self.assertEqual(next_document_number(self.db, prefix='GRN', year=2024), 'GRN-2024-0001')

    def test_continues_after_highest_sequence(self) -> None:
        requester = make_user(self.db, 'requester')
        for number in ('REQ-2024-0003', 'REQ-2024-0010', 'REQ-2023-0099'):
            self.db.add(
                Requisition(
                    requisition_number=number,
                    requester_id=requester.id,
                    purpose='Exercise',
                    status=RequisitionStatus.DRAFT,
                )
            )
        self.db.flush()

        self.assertEqual(next_document_number(self.db, prefix='REQ', year=2024), 'REQ-2024-0011')
        self.assertEqual(next_document_number(self.db, prefix='REQ', year=2025), 'REQ-2025-0001')

    def test_unknown_prefix(self) -> None:
        with self.assertRaises(ValueError):
            next_document_number(self.db, prefix='PO', year=2024)

    def test_item_codes_increment(self) -> None:
        self.assertEqual(next_item_code(self.db), 'ITM-00001')
        make_item(self.db, 'Compass')
        make_item(self.db, 'Map case')
        self.assertEqual(next_item_code(self.db), 'ITM-00004')

    def test_each_call_reserves_a_new_number(self) -> None:
        first = next_document_number(self.db, prefix='GRN', year=2024)
        second = next_document_number(self.db, prefix='GRN', year=2024)
        self.assertEqual((first, second), ('GRN-2024-0001', 'GRN-2024-0002'))
        counter = self.db.get(DocumentCounter, ('GRN', 2024))
        self.assertEqual(counter.last_value, 2)

    def test_counter_never_reuses_existing_numbers(self) -> None:
        self.assertEqual(next_item_code(self.db), 'ITM-00001')
        make_item(self.db, 'Compass', item_code='ITM-00040')
        self.assertEqual(next_item_code(self.db), 'ITM-00041')

    def test_counter_row_is_locked_for_update(self) -> None:
        sql = str(counter_lock_query('GRN', 2024).compile(dialect=postgresql.dialect()))
        self.assertIn('FOR UPDATE', sql)
