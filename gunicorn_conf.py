import os

host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "5010")
bind = f"{host}:{port}"

# Subscriptions, rate limit windows and the drain lock live in process memory,
# so a second worker would split them
workers = 1
worker_class = "uvicorn.workers.UvicornWorker"
keepalive = 120
timeout = int(os.getenv("TIMEOUT", "120"))
graceful_timeout = 30
preload_app = False  # the lifespan opens sessions and the store per worker

# Logging
loglevel = os.getenv("LOG_LEVEL", "info")
errorlog = "-"
accesslog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(M)sms'

def post_fork(server, worker):
    os.environ["WORKER_ID"] = str(worker.age)
