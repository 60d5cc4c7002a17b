"""Readers for the platform-owned visit ledger and achievement catalog"""
from barber_loyalty.integrations.catalog_client import HttpCatalogStore
from barber_loyalty.integrations.ledger import HttpVisitLedger, InMemoryVisitLedger, VisitLedger

__all__ = ["HttpCatalogStore", "HttpVisitLedger", "InMemoryVisitLedger", "VisitLedger"]
