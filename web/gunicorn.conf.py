import os

wsgi_app = "config.wsgi:application"
bind = f"{os.getenv('HOST', '0.0.0.0')}:{os.getenv('PORT', '8000')}"

# Behind the hosting proxy; the webhook and checkout URLs come from PUBLIC_BASE_URL
forwarded_allow_ips = os.getenv("FORWARDED_ALLOW_IPS", "*")


def _workers_for_cpus():
    return min(max(2, (os.cpu_count() or 1) * 2), 8)


workers = int(os.getenv("GUNI_WORKERS", str(_workers_for_cpus())))

# Handlers block on calls to the payment provider, so each worker is threaded
worker_class = "gthread"
threads = int(os.getenv("GTHREADS", "4"))

# Checkout requests are bounded by HTTP_TIMEOUT_SECS x HTTP_RETRY_MAX. Webhook
# requests use the shorter HTTP_STATUS_TIMEOUT_SECS x HTTP_STATUS_RETRY_MAX
timeout = int(os.getenv("GUNI_TIMEOUT", "45"))
graceful_timeout = int(os.getenv("GUNI_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNI_KEEPALIVE", "5"))

# Carts and webhooks are small; ApiSizeLimitMiddleware caps bodies too
limit_request_line = 4094
limit_request_fields = 100

preload_app = True
max_requests = int(os.getenv("GUNI_MAX_REQUESTS", "2000"))
max_requests_jitter = int(os.getenv("GUNI_MAX_REQUESTS_JITTER", "200"))

# Access/error logs to stdout; application logs are JSON (see LOGGING)
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNI_LOGLEVEL", "info")


def post_fork(server, worker):
    # Each worker owns its circuit breaker; log the pid so breaker logs can be told apart
    server.log.info("worker %s ready", worker.pid)
