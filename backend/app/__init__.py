"""Webtoon Studio billing backend.

Modules:
    - core: Configuration, database, logging, metrics, Celery setup
    - modules.auth: Identity from the hosted auth provider
    - modules.billing: Plans, token ledger, subscriptions, recurring billing
    - modules.payment_gateway: Toss Payments billing client
"""

__version__ = "0.1.0"
