import unittest

from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from expense_tracker.categories import (
    create_category,
    deactivate_category,
    get_category,
    list_categories,
    update_category,
)
from expense_tracker.db import families, init_db
from expense_tracker.errors import NotFound, ValidationError


class CategoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        init_db(self.engine)
        self.conn = self.engine.connect()
        self.addCleanup(self.conn.close)
        self.family_id = self._add_family("Home")
        self.other_family_id = self._add_family("Away")

    def _add_family(self, name: str) -> int:
        return self.conn.execute(
            insert(families).values(name=name, base_currency="RSD").returning(families.c.id)
        ).scalar_one()

    def test_create_with_parent_of_same_type(self) -> None:
        food = create_category(self.conn, self.family_id, "Food", "expense")
        snacks = create_category(self.conn, self.family_id, " Snacks ", "EXPENSE", parent_id=food["id"])

        self.assertEqual(snacks["name"], "Snacks")
        self.assertEqual(snacks["type"], "expense")
        self.assertEqual(snacks["parent_id"], food["id"])

    def test_parent_must_share_type(self) -> None:
        salary = create_category(self.conn, self.family_id, "Salary", "income")

        with self.assertRaises(ValidationError) as ctx:
            create_category(self.conn, self.family_id, "Bonus", "expense", parent_id=salary["id"])

        self.assertEqual(ctx.exception.field, "parent_id")

    def test_parent_from_other_family_is_rejected(self) -> None:
        foreign = create_category(self.conn, self.other_family_id, "Food", "expense")

        with self.assertRaises(ValidationError):
            create_category(self.conn, self.family_id, "Snacks", "expense", parent_id=foreign["id"])

    def test_category_cannot_be_its_own_parent(self) -> None:
        food = create_category(self.conn, self.family_id, "Food", "expense")

        with self.assertRaises(ValidationError):
            update_category(self.conn, self.family_id, food["id"], parent_id=food["id"])

    def test_category_cannot_move_under_a_descendant(self) -> None:
        root = create_category(self.conn, self.family_id, "Home", "expense")
        child = create_category(self.conn, self.family_id, "Utilities", "expense", parent_id=root["id"])
        grandchild = create_category(self.conn, self.family_id, "Power", "expense", parent_id=child["id"])

        with self.assertRaises(ValidationError) as ctx:
            update_category(self.conn, self.family_id, root["id"], parent_id=grandchild["id"])

        self.assertIn("descendant", ctx.exception.message)

    def test_reparent_and_clear_parent(self) -> None:
        food = create_category(self.conn, self.family_id, "Food", "expense")
        fun = create_category(self.conn, self.family_id, "Fun", "expense")
        snacks = create_category(self.conn, self.family_id, "Snacks", "expense", parent_id=food["id"])

        moved = update_category(self.conn, self.family_id, snacks["id"], parent_id=fun["id"])
        self.assertEqual(moved["parent_id"], fun["id"])

        cleared = update_category(self.conn, self.family_id, snacks["id"], parent_id=None)
        self.assertIsNone(cleared["parent_id"])

    def test_update_leaves_unset_fields(self) -> None:
        food = create_category(self.conn, self.family_id, "Food", "expense")

        renamed = update_category(self.conn, self.family_id, food["id"], name="Groceries")

        self.assertEqual(renamed["name"], "Groceries")
        self.assertTrue(renamed["is_active"])

    def test_deactivated_category_is_hidden(self) -> None:
        food = create_category(self.conn, self.family_id, "Food", "expense")
        deactivate_category(self.conn, self.family_id, food["id"])

        with self.assertRaises(NotFound):
            get_category(self.conn, self.family_id, food["id"])
        self.assertEqual(list_categories(self.conn, self.family_id), [])
        self.assertEqual(len(list_categories(self.conn, self.family_id, include_inactive=True)), 1)

    def test_listing_is_scoped_and_filtered(self) -> None:
        create_category(self.conn, self.family_id, "Salary", "income")
        create_category(self.conn, self.family_id, "Food", "expense")
        create_category(self.conn, self.other_family_id, "Rent", "expense")

        names = [row["name"] for row in list_categories(self.conn, self.family_id, category_type="expense")]

        self.assertEqual(names, ["Food"])

    def test_other_family_category_is_not_found(self) -> None:
        foreign = create_category(self.conn, self.other_family_id, "Rent", "expense")

        with self.assertRaises(NotFound):
            get_category(self.conn, self.family_id, foreign["id"])

    def test_blank_name_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            create_category(self.conn, self.family_id, "   ", "expense")


if __name__ == "__main__":
    unittest.main()
