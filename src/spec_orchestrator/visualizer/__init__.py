"""Visualizer package - Rich terminal views for plan progress."""

from .plan_progress import render_plan_progress, render_plan_summary

__all__ = [
	"render_plan_progress",
	"render_plan_summary",
]
