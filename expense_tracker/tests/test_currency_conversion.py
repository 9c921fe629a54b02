import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, insert, select
from sqlalchemy.pool import StaticPool

from expense_tracker.audit import UnitOfWork
from expense_tracker.currency_conversion import (
    DatabaseRateResolver,
    RateNotFound,
    ReportingConverter,
    StaticRateProvider,
    convert_amount,
    normalize_amount,
    normalize_currency,
    quantize_amount,
    quantize_rate,
    upsert_rate,
)
from expense_tracker.db import audit_log, families, init_db, users
from expense_tracker.errors import RateUnavailable, ValidationError


class StaticRateProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.provider = StaticRateProvider(rates={("EUR", "RSD"): Decimal("117.5")})

    def test_same_currency_is_one(self) -> None:
        self.assertEqual(self.provider.get_rate("RSD", "RSD"), Decimal("1"))

    def test_direct_pair(self) -> None:
        self.assertEqual(self.provider.get_rate("EUR", "RSD"), Decimal("117.5"))

    def test_reverse_pair_is_inverted_to_six_places(self) -> None:
        self.assertEqual(self.provider.get_rate("RSD", "EUR"), Decimal("0.008511"))

    def test_missing_pair_raises(self) -> None:
        with self.assertRaises(RateNotFound):
            self.provider.get_rate("USD", "RSD")

    def test_default_rates_are_built_in(self) -> None:
        self.assertEqual(StaticRateProvider().get_rate("EUR", "RSD"), Decimal("117.5"))

    def test_empty_rates_disable_fallback(self) -> None:
        provider = StaticRateProvider({})

        self.assertEqual(provider.rates, {})
        with self.assertRaises(RateNotFound):
            provider.get_rate("EUR", "RSD")
        with self.assertRaises(RateNotFound):
            provider.get_rate("RSD", "EUR")


class RoundingTests(unittest.TestCase):
    def test_amounts_round_half_up_to_cents(self) -> None:
        self.assertEqual(quantize_amount(Decimal("0.005")), Decimal("0.01"))
        self.assertEqual(quantize_amount(Decimal("10.004")), Decimal("10.00"))

    def test_rates_round_to_six_places(self) -> None:
        self.assertEqual(quantize_rate(Decimal("1") / Decimal("3")), Decimal("0.333333"))

    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")

    def test_rejects_malformed_currency(self) -> None:
        with self.assertRaises(ValidationError):
            normalize_currency("EURO")

    def test_rejects_currency_outside_allow_list(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            normalize_currency("usd", {"RSD", "EUR"}, field_name="from")

        self.assertEqual(ctx.exception.field, "from")


class StoredRateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        init_db(self.engine)
        with self.engine.begin() as conn:
            self.family_id, self.user_id = self._add_member(conn, "Home", "ana@example.com")
            self.other_family_id, self.other_user_id = self._add_member(conn, "Away", "ivan@example.com")
            uow = self._uow(conn)
            upsert_rate(uow, "EUR", "RSD", Decimal("117.50"), date(2024, 6, 1))
            upsert_rate(uow, "EUR", "RSD", Decimal("118.00"), date(2024, 6, 20), source="nbs")
        self.resolver = DatabaseRateResolver(self.engine, self.family_id)

    def _add_member(self, conn, family: str, email: str) -> tuple[int, int]:
        family_id = conn.execute(
            insert(families).values(name=family, base_currency="RSD").returning(families.c.id)
        ).scalar_one()
        user_id = conn.execute(
            insert(users)
            .values(family_id=family_id, email=email, name=family, hashed_password="x", is_active=True)
            .returning(users.c.id)
        ).scalar_one()
        return family_id, user_id

    def _uow(self, conn, other: bool = False) -> UnitOfWork:
        if other:
            return UnitOfWork(conn=conn, actor_id=self.other_user_id, family_id=self.other_family_id)
        return UnitOfWork(conn=conn, actor_id=self.user_id, family_id=self.family_id)

    def test_latest_rate_on_or_before_date(self) -> None:
        self.assertEqual(
            self.resolver.latest_rate("EUR", "RSD", date(2024, 6, 19)).rate, Decimal("117.50")
        )
        self.assertEqual(
            self.resolver.latest_rate("EUR", "RSD", date(2024, 6, 20)).rate, Decimal("118.00")
        )

    def test_latest_rate_before_first_entry_raises(self) -> None:
        with self.assertRaises(RateNotFound):
            self.resolver.latest_rate("EUR", "RSD", date(2024, 5, 31))

    def test_list_by_date_and_history(self) -> None:
        by_date = self.resolver.list_by_date(date(2024, 6, 20))
        self.assertEqual([(item.rate, item.source) for item in by_date], [(Decimal("118.00"), "nbs")])
        self.assertEqual(self.resolver.list_by_date(date(2024, 6, 2)), [])

        history = self.resolver.history("EUR", "RSD", date(2024, 6, 1), date(2024, 6, 30))
        self.assertEqual([item.date for item in history], [date(2024, 6, 1), date(2024, 6, 20)])

    def test_upsert_replaces_rate_for_same_day(self) -> None:
        with self.engine.begin() as conn:
            saved = upsert_rate(self._uow(conn), "EUR", "RSD", Decimal("117.25"), date(2024, 6, 1))

        self.assertEqual(saved.rate, Decimal("117.25"))
        self.assertEqual(len(self.resolver.list_by_date(date(2024, 6, 1))), 1)

    def test_upsert_writes_audit_entries(self) -> None:
        with self.engine.begin() as conn:
            upsert_rate(self._uow(conn), "EUR", "RSD", Decimal("117.25"), date(2024, 6, 1))

        with self.engine.connect() as conn:
            entries = conn.execute(
                select(audit_log.c.action, audit_log.c.actor_id, audit_log.c.family_id)
                .where(audit_log.c.entity == "exchange_rate")
                .order_by(audit_log.c.id)
            ).all()
        self.assertEqual(
            [tuple(entry) for entry in entries],
            [
                ("create", self.user_id, self.family_id),
                ("create", self.user_id, self.family_id),
                ("update", self.user_id, self.family_id),
            ],
        )

    def test_rates_are_kept_per_family(self) -> None:
        other = DatabaseRateResolver(self.engine, self.other_family_id)
        with self.assertRaises(RateNotFound):
            other.latest_rate("EUR", "RSD", date(2024, 6, 30))

        with self.engine.begin() as conn:
            upsert_rate(self._uow(conn, other=True), "EUR", "RSD", Decimal("1000"), date(2024, 6, 1))

        self.assertEqual(other.latest_rate("EUR", "RSD", date(2024, 6, 30)).rate, Decimal("1000"))
        self.assertEqual(
            self.resolver.latest_rate("EUR", "RSD", date(2024, 6, 19)).rate, Decimal("117.50")
        )
        self.assertEqual(len(self.resolver.list_by_date(date(2024, 6, 1))), 1)
        self.assertEqual(
            normalize_amount(Decimal("10"), "EUR", "RSD", date(2024, 6, 15), self.resolver),
            Decimal("1175.00"),
        )

    def test_upsert_rejects_invalid_rates(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(ValidationError):
                upsert_rate(self._uow(conn), "EUR", "RSD", Decimal("0"), date(2024, 6, 2))
            with self.assertRaises(ValidationError):
                upsert_rate(self._uow(conn), "EUR", "EUR", Decimal("1"), date(2024, 6, 2))

    def test_normalize_amount_uses_stored_rate(self) -> None:
        amount = normalize_amount(Decimal("10"), "EUR", "RSD", date(2024, 6, 15), self.resolver)

        self.assertEqual(amount, Decimal("1175.00"))

    def test_normalize_amount_in_base_currency_is_unchanged(self) -> None:
        amount = normalize_amount("12.50", "RSD", "RSD", date(2024, 6, 15), self.resolver)

        self.assertEqual(amount, Decimal("12.50"))

    def test_normalize_amount_never_falls_back(self) -> None:
        with self.assertRaises(RateUnavailable):
            normalize_amount(Decimal("10"), "EUR", "RSD", date(2024, 5, 1), self.resolver)
        with self.assertRaises(RateUnavailable):
            normalize_amount(Decimal("10"), "RSD", "EUR", date(2024, 6, 15), self.resolver)

    def test_reporting_converter_inverts_reverse_pair(self) -> None:
        converter = ReportingConverter(self.resolver)

        quote = converter.rate("RSD", "EUR", date(2024, 6, 15))

        self.assertEqual(quote.rate, Decimal("0.008511"))
        self.assertEqual(quote.effective_date, date(2024, 6, 1))
        self.assertEqual(
            convert_amount(Decimal("1175"), "RSD", "EUR", converter, date(2024, 6, 15)),
            Decimal("10.00"),
        )

    def test_reporting_converter_uses_fallback_when_nothing_stored(self) -> None:
        converter = ReportingConverter(self.resolver, StaticRateProvider({("EUR", "RSD"): Decimal("117.5")}))

        with self.assertLogs("expense_tracker.currency_conversion", level="WARNING"):
            quote = converter.rate("EUR", "RSD", date(2024, 1, 1))

        self.assertEqual(quote.rate, Decimal("117.5"))
        self.assertEqual(quote.source, "fallback")

    def test_reporting_converter_without_fallback_rates(self) -> None:
        converter = ReportingConverter(self.resolver, StaticRateProvider({}))

        with self.assertRaises(RateUnavailable):
            converter.rate("EUR", "RSD", date(2024, 1, 1))
        self.assertEqual(converter.rate("EUR", "RSD", date(2024, 6, 15)).rate, Decimal("117.50"))

    def test_reporting_converter_raises_when_pair_unknown(self) -> None:
        converter = ReportingConverter(self.resolver)

        with self.assertRaises(RateUnavailable):
            converter.rate("USD", "GBP", date(2024, 6, 15))


if __name__ == "__main__":
    unittest.main()
