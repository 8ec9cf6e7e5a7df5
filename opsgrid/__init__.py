"""OpsGrid

Multi-user operations workspace: typed sheets, site folders and trackers
with per-resource access grants, served as a JSON API over SQLite or PostgreSQL.
"""

__version__ = "0.4.0"
