"""
Attendance Engine - Biometric Identity Matching and Attendance Reconciliation

A modular Python engine that gates face observations on quality and liveness,
matches them against enrolled templates, aggregates them into per-session
tracks and reconciles each session into deduplicated attendance records.
"""

__version__ = "1.0.0"
__author__ = "Attendance Engine Team"
