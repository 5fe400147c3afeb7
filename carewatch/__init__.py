"""Core runtime for role-gated patient monitoring.

This package holds session resolution, route gating, live alert feeds and the
compliance audit trail, isolated from any concrete backend for easy testing.
"""
