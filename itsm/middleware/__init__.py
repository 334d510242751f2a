"""Request-level middleware: logging, timing, rate limits and cron authentication."""
