# backend/wsgi.py
from rentaldesk import create_app

app = create_app()
