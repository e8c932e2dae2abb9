"""
WSGI entry point for gunicorn and the Flask CLI.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db init       # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    flask --app wsgi sweep-uploads
"""

from npd_tracker import create_app

app = create_app()
