"""Shared helpers for todo-sync."""
