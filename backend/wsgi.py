# backend/wsgi.py
from printcrm import create_app

app = create_app()
