"""
API Module

REST API endpoints for NudgeCast.
"""
