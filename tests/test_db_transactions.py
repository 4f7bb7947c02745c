import unittest

from app.db import Database


class _PostgresConnection:
    """Records how the wrapper drives a psycopg2 connection."""

    def __init__(self) -> None:
        self.autocommit = True
        self.calls = []

    def commit(self) -> None:
        self.calls.append(("commit", self.autocommit))

    def rollback(self) -> None:
        self.calls.append(("rollback", self.autocommit))


class PostgresUnitOfWorkTest(unittest.TestCase):
    def test_begin_opens_transaction_until_commit(self) -> None:
        connection = _PostgresConnection()
        db = Database("postgres", connection)

        db.begin_immediate()
        self.assertFalse(connection.autocommit)
        db.begin_immediate()
        self.assertFalse(connection.autocommit)

        db.commit()
        self.assertEqual(connection.calls, [("commit", False)])
        self.assertTrue(connection.autocommit)

    def test_rollback_discards_and_restores_autocommit(self) -> None:
        connection = _PostgresConnection()
        db = Database("postgres", connection)

        db.begin_immediate()
        db.rollback()
        self.assertEqual(connection.calls, [("rollback", False)])
        self.assertTrue(connection.autocommit)

        db.commit()
        self.assertEqual(connection.calls[-1], ("commit", True))
        self.assertTrue(connection.autocommit)


if __name__ == "__main__":
    unittest.main()
