import multiprocessing
import os

# Defaults for a small container; tune via env
wsgi_app = "qr_gate:create_app()"
workers = int(os.environ.get("WEB_CONCURRENCY", (multiprocessing.cpu_count() * 2) + 1))
threads = 2
worker_class = "gthread"
preload_app = True
bind = os.environ.get("BIND", ":8000")
# Render/Heroku style proxy headers
forwarded_allow_ips = "*"
# Keep-alive tuning
timeout = 60
keepalive = 75
# Access logging
accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(L)ss rid=%({x-request-id}o)s'
