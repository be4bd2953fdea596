"""Durable plan storage and crash recovery."""
