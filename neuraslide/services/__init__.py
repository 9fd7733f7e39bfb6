"""Webhook pipeline services."""
