"""
MyNotes core - persistence and repository layer for a personal notes app.

Notes, checklists, folders and tags are plain domain records; this package
maps them onto a local SQLite store through SQLAlchemy, keeps their
relationships consistent and publishes fresh snapshots after every commit.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("mynotes-core")
except PackageNotFoundError:
    __version__ = "0.4.0"
