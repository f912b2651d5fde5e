"""
Shift Cycle Engine

Deterministic computation of rotating 4-2 shift schedules: which team
works which shift on any date, reconciled with user-to-team assignments
and approved shift exceptions.
"""

__version__ = "1.0.0"
__author__ = "Shift Cycle Team"
