"""
Gunicorn configuration for the Punchcard webhook/API server.
"""
import os

bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Webhook handlers are short DB transactions plus the odd Square lookup
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
worker_class = 'sync'
timeout = 60
keepalive = 5

# Logging
accesslog = '-'  # stdout
errorlog = '-'   # stderr
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

proc_name = 'punchcard'

# Preload so the background scheduler starts once, in the master
preload_app = True

graceful_timeout = 30


def on_starting(server):
    print("[Gunicorn] Starting Punchcard server...")


def on_exit(server):
    print("[Gunicorn] Punchcard server shutting down...")
