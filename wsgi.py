"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi seed-demo     # demo project with phases and tasks
    flask --app wsgi db migrate -m "description"
    gunicorn wsgi:app
"""

from phasereview import create_app

app = create_app()
