"""Persistence helpers for planning records."""

from .records import PlanningRecord, PlanningRecordStore, RecordSummary

__all__ = ["PlanningRecord", "PlanningRecordStore", "RecordSummary"]
