"""API Routers package."""
from . import scheduling, config, employees, admin, notifications, events

__all__ = ['scheduling', 'config', 'employees', 'admin', 'notifications', 'events']
