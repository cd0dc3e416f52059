"""
WSGI entry point and Flask-Migrate / Alembic target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-stage-configs
    flask --app wsgi escalate-overdue     # schedule at least once per SLA check interval
"""

from approval_engine import create_app

app = create_app()
