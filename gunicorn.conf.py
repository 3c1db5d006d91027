# gunicorn.conf.py
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"
# chunk-sessies leven in het geheugen van één proces: één worker, of sticky routing op session_id
workers = int(os.getenv("WEB_CONCURRENCY", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
wsgi_app = "app.main:app"
preload_app = False
timeout = int(os.getenv("WEB_TIMEOUT", "300"))  # assemblage + verwerking van 200MB kan even duren
graceful_timeout = 30
keepalive = 5
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
