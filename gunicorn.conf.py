# gunicorn.conf.py
# gunicorn -c gunicorn.conf.py app.main:app
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8000')}"
workers = int(os.getenv("WEB_CONCURRENCY", "2"))  # meerdere workers ok: sessiestatus is compare-and-set in de DB
worker_class = "uvicorn.workers.UvicornWorker"
preload_app = False
timeout = 120
# lopende extractie-workers krijgen tot hier de tijd om te stoppen
graceful_timeout = int(os.getenv("GRACEFUL_TIMEOUT", "30"))
keepalive = 5
# geen max_requests: een recycle zou lopende extractie-tasks afbreken
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
