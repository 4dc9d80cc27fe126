"""Celery job queues, event bus and engine assembly."""
