"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi generate-operation-cycles --run-date 2026-01-01
"""

from app import create_app

app = create_app()
