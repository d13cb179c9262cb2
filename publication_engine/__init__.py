"""Scheduled multi-tenant publication engine."""
