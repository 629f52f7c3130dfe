"""Loyalty points ledger fed by Shopify order webhooks.

Orders arrive signed, are deduplicated and queued, then credited to the
ledger exactly once per order by a background worker.
"""
