"""Shared test helpers for attoplan."""

from tests.helpers.fixtures import FakeExecutor, make_plan

__all__ = ["FakeExecutor", "make_plan"]
