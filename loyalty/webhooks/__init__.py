"""Webhook intake for Shopify ``orders/create`` events.

Each webhook is signature-verified, checked against the dedup cache and
queued for the ingestion worker.
"""
