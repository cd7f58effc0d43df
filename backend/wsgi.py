# backend/wsgi.py
from possync import create_app

app = create_app()
