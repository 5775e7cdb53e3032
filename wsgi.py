"""
WSGI entry point and Flask-Migrate / Alembic target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-demo
    flask --app wsgi reconcile-allocations
"""

from worktrack import create_app

app = create_app()
