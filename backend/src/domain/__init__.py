"""Shared domain primitives: state machines, results, clock."""
