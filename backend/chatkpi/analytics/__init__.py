"""Conversation aggregation and KPI calculation over canonical records."""
