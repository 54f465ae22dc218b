"""Subscription module.

Accounts, payment orders, the subscription state machine and the payments
HTTP API. Import submodules directly; this package does not re-export them
so that the plan catalog can depend on ``exceptions`` without a cycle.
"""
