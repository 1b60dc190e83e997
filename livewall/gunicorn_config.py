"""
Gunicorn configuration file for production deployment.

The change feed and the live wall displays live in process memory, so the
whole app runs in one worker process; concurrency comes from threads.
"""

import os

# Server socket
bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"
backlog = 2048

# Worker processes
workers = 1
worker_class = 'gthread'
threads = int(os.environ.get('GUNICORN_THREADS', '8'))
timeout = 120
keepalive = 2

# Graceful shutdown
graceful_timeout = 30

# Logging
accesslog = '-'  # Log to stdout
errorlog = '-'   # Log to stdout
loglevel = 'warning'
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

# Process naming
proc_name = 'livewall-gunicorn'

# Server mechanics
daemon = False
pidfile = None
umask = 0
tmp_upload_dir = None


def on_starting(server):
    """Called just before the master process is initialized."""
    server.log.info("Starting Livewall application server")


def when_ready(server):
    """Called just after the server is started."""
    server.log.info("Livewall application server is ready. Listening on: %s", bind)


def worker_exit(server, worker):
    """Stop live wall display timers when the worker goes away."""
    from livewall.app import registry
    registry.stop_all()
    server.log.info("Stopped live wall displays")


def on_exit(server):
    """Called just before exiting Gunicorn."""
    server.log.info("Shutting down Livewall application server")
