"""Short links, click counting, visit logs, sessions and rate limits on a SQL database and Redis."""

__version__ = "0.1.0"