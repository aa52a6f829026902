"""Billing webhook intake.

Every delivery is signature-verified, checked for freshness, claimed in
the idempotency ledger, then dispatched to its handler. Handler failures
are dead-lettered for replay.
"""
