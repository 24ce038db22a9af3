"""
Course Watcher - Automated course availability monitoring.

This package provides functionality to:
- Fetch the course availability page
- Parse HTML content to extract course records grouped by faculty
- Synchronize records with a SQLite store to detect added/removed courses
- Filter changes by course points
- Notify via console, email, SMS or webhook and keep an audit log of runs
"""

__version__ = "1.0.0"
__author__ = "Course Watcher Team"
