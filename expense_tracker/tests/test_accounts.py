import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, insert
from sqlalchemy.pool import StaticPool

from expense_tracker.accounts import (
    account_balance,
    create_account,
    deactivate_account,
    get_account,
    last_transaction_date,
    list_accounts,
    update_account,
)
from expense_tracker.audit import UnitOfWork
from expense_tracker.categories import create_category
from expense_tracker.currency_conversion import DatabaseRateResolver, ReportingConverter, upsert_rate
from expense_tracker.db import families, init_db, users
from expense_tracker.errors import NotFound, ValidationError
from expense_tracker.ledger import TransactionLedger

ALLOWED = {"RSD", "EUR"}


class AccountTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        init_db(self.engine)
        with self.engine.begin() as conn:
            self.family_id = conn.execute(
                insert(families).values(name="Home", base_currency="RSD").returning(families.c.id)
            ).scalar_one()
            self.user_id = conn.execute(
                insert(users)
                .values(
                    family_id=self.family_id,
                    email="ana@example.com",
                    name="Ana",
                    hashed_password="x",
                    is_active=True,
                )
                .returning(users.c.id)
            ).scalar_one()
            self.food = create_category(conn, self.family_id, "Food", "expense")
            self.salary = create_category(conn, self.family_id, "Salary", "income")
            upsert_rate(
                UnitOfWork(conn=conn, actor_id=self.user_id, family_id=self.family_id),
                "EUR",
                "RSD",
                Decimal("117.50"),
                date(2024, 1, 1),
            )
        self.ledger = TransactionLedger(self.engine, ALLOWED, clock=lambda: date(2024, 6, 30))

    def _account(self, name: str, currency: str, initial: str) -> dict:
        with self.engine.begin() as conn:
            return create_account(conn, self.family_id, name, "checking", currency, initial, ALLOWED)

    def _post(self, account: dict, category: dict, txn_type: str, amount: str, currency: str) -> dict:
        return self.ledger.create(
            family_id=self.family_id,
            account_id=account["id"],
            category_id=category["id"],
            type=txn_type,
            amount=amount,
            currency=currency,
            description=None,
            date=date(2024, 6, 15),
            actor_id=self.user_id,
        )

    def _balance(self, account: dict) -> Decimal:
        with self.engine.connect() as conn:
            converter = ReportingConverter(DatabaseRateResolver(conn, self.family_id))
            return account_balance(conn, account, "RSD", converter, date(2024, 6, 30))

    def test_create_validates_input(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(ValidationError) as ctx:
                create_account(conn, self.family_id, "Wallet", "cash", "RSD", "-1", ALLOWED)
            self.assertEqual(ctx.exception.field, "initial_balance")
            with self.assertRaises(ValidationError):
                create_account(conn, self.family_id, "Wallet", "crypto", "RSD", "0", ALLOWED)
            with self.assertRaises(ValidationError):
                create_account(conn, self.family_id, "Wallet", "cash", "USD", "0", ALLOWED)
            with self.assertRaises(ValidationError):
                create_account(conn, self.family_id, "", "cash", "RSD", "0", ALLOWED)

    def test_balance_in_base_currency_account(self) -> None:
        wallet = self._account("Wallet", "RSD", "1000")
        self._post(wallet, self.salary, "income", "500", "RSD")
        self._post(wallet, self.food, "expense", "200", "RSD")
        self._post(wallet, self.food, "expense", "10", "EUR")

        self.assertEqual(self._balance(wallet), Decimal("125.00"))

    def test_balance_in_foreign_currency_account(self) -> None:
        savings = self._account("Savings", "EUR", "100")
        self._post(savings, self.food, "expense", "10", "EUR")
        self._post(savings, self.food, "expense", "1175", "RSD")

        self.assertEqual(self._balance(savings), Decimal("80.00"))

    def test_deleted_transactions_do_not_affect_balance(self) -> None:
        wallet = self._account("Wallet", "RSD", "1000")
        row = self._post(wallet, self.food, "expense", "200", "RSD")
        self.ledger.delete(self.family_id, row["id"], actor_id=self.user_id)

        self.assertEqual(self._balance(wallet), Decimal("1000.00"))

    def test_last_transaction_date(self) -> None:
        wallet = self._account("Wallet", "RSD", "0")
        with self.engine.connect() as conn:
            self.assertIsNone(last_transaction_date(conn, wallet))
        self._post(wallet, self.salary, "income", "5", "RSD")
        with self.engine.connect() as conn:
            self.assertEqual(last_transaction_date(conn, wallet), date(2024, 6, 15))

    def test_update_and_deactivate(self) -> None:
        wallet = self._account("Wallet", "RSD", "0")

        with self.engine.begin() as conn:
            renamed = update_account(conn, self.family_id, wallet["id"], name="Cash")
            self.assertEqual(renamed["name"], "Cash")
            deactivate_account(conn, self.family_id, wallet["id"])

        with self.engine.connect() as conn:
            with self.assertRaises(NotFound):
                get_account(conn, self.family_id, wallet["id"])
            self.assertEqual(list_accounts(conn, self.family_id), [])
            self.assertEqual(len(list_accounts(conn, self.family_id, include_inactive=True)), 1)

    def test_other_family_account_is_not_found(self) -> None:
        wallet = self._account("Wallet", "RSD", "0")

        with self.engine.connect() as conn:
            with self.assertRaises(NotFound):
                get_account(conn, self.family_id + 1, wallet["id"])


if __name__ == "__main__":
    unittest.main()
