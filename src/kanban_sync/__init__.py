"""
kanban-sync: collaborative kanban board service with optimistic versioning,
time-boxed edit locks, and realtime board channels.
"""

__version__ = "1.0.0"
