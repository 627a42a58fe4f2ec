"""Plan compilation: command analysis, transform expansion and plan files."""

from kiln.plan.expand import expand_plan

__all__ = ["expand_plan"]
