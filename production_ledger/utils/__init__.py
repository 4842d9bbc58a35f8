# utils/__init__.py - Database and configuration helpers
