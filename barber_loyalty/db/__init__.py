"""PostgreSQL persistence for redemption records"""
from barber_loyalty.db.connection import Database, db
from barber_loyalty.db.redemption_store import PostgresRedemptionStore

__all__ = ["Database", "db", "PostgresRedemptionStore"]
