"""Celery tasks for scheduled settlement work."""
