"""Custom SQLAlchemy column types."""

from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.types import BigInteger, TypeDecorator

CENTS = Decimal('0.01')


class Money(TypeDecorator):
    """
    Decimal amounts stored as whole cents in an integer column.

    Comparisons and arithmetic in SQL (e.g. the conditional debit
    ``balance >= :amount``) run on exact integers on every backend,
    including SQLite where NUMERIC is held as a float.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        cents = Decimal(str(value)) / CENTS
        return int(cents.quantize(Decimal('1'), rounding=ROUND_HALF_UP))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) * CENTS).quantize(CENTS)


__all__ = ["Money", "CENTS"]
