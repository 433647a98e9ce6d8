# gunicorn_conf.py

# Gunicorn config file
# Run with: gunicorn -c gunicorn_conf.py dmfy.main:app

import os

# Basic configuration
bind = f"0.0.0.0:{os.getenv('PORT', '3000')}"
# Flows, sessions and per-sender locks live in process memory; more than one
# worker would split them.
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"

# Settings for running behind a reverse proxy (Render/Railway/Fly.io)
forwarded_allow_ips = "*"

# --- Logging ---
# Send access and error logs to stdout and stderr
accesslog = "-"
errorlog = "-"
loglevel = "info"
