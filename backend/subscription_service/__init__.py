"""Subscription Payment Reconciliation Service.

Sells time-bounded subscription plans through a hosted payment gateway and
keeps each account's plan state consistent with what the gateway reports.

Modules:
    - core: Configuration, database, logging, tracing, metrics, Celery setup
    - modules.plans: Immutable plan catalog
    - modules.payment_gateway: Hosted checkout gateway client
    - modules.webhook: Webhook signature verification and ingestion
    - modules.subscription: Accounts, orders, state machine, HTTP API
    - modules.notification: Email notifications
    - modules.sweeper: Scheduled reconciliation sweeps
    - modules.auth: Bearer token identity
"""

__version__ = "0.1.0"
