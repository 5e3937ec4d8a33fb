"""
Billing core.

- plan_catalog: plan limits by plan id (Free when no current subscription)
- usage_tracking: per-period usage ledger with atomic counters
- quota_gate: pre-flight checks for uploads and transformations
- paymob: payment gateway client
- payments: payment initiation (gateway order + PENDING row)
- webhooks: webhook reconciliation into at-most-once activation
- subscriptions: subscription activation and identity propagation
"""
