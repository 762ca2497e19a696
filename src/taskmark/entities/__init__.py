"""
Entity subsystem.

Components:
- entity_models.py: data structures (Task, Bookmark, User, Session, filters)
- collections.py: per-table description used by the generic store/selectors
"""
