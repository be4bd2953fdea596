"""Asynchronous git plumbing used by the plan runtime."""
