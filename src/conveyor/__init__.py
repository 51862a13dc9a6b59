"""Conveyor — deployment pipeline orchestration engine."""
