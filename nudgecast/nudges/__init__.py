"""
Nudge System

Type registry, rule engine, lifecycle state machine and the
user-facing operation layer.
"""
