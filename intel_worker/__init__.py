"""Background job queues and batch research for the sales intelligence dashboard."""

__version__ = "0.1.0"
