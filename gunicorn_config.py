import os

from dotenv import load_dotenv

load_dotenv()

# Server socket - bind to localhost only (Nginx will proxy)
bind = os.getenv("GUNICORN_BIND", "127.0.0.1:8000")
backlog = 2048

# Live leave events are held in process memory (services/live_events.py).
# More than one worker splits the open sockets between processes, so a push
# only reaches clients connected to the worker that handled the request.
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
# SMTP sends run as background tasks after the response
timeout = int(os.getenv("GUNICORN_TIMEOUT", "120"))
keepalive = 5

max_requests = 1000
max_requests_jitter = 50

# Logging
LOG_DIR = os.getenv("LOG_DIR", "/opt/leave-workflow/logs")
accesslog = os.path.join(LOG_DIR, "access.log")
errorlog = os.path.join(LOG_DIR, "error.log")
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s %(M)sms'

proc_name = "leave-workflow"

daemon = False
pidfile = None
umask = 0
