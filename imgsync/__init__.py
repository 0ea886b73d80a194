"""Database-driven file transfer: change sniffer, leased job queue, lease sweeper, and streaming local and FTP endpoints."""

__version__ = "0.1.0"