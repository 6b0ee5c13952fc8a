"""Configuration, session and query tracking, and cached stat-activity collection for a Greenplum/Cloudberry metrics agent."""

__version__ = "0.1.0"
__all__ = ["activity", "collector", "config", "lister", "running", "sentinel", "sessions"]