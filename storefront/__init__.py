"""Storefront order fulfillment services."""
