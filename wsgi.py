"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi run-change-automation
    flask --app wsgi db migrate -m "description"
"""

from itsm import create_app

app = create_app()
