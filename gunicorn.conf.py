import multiprocessing, os

bind = "0.0.0.0:" + os.getenv("PORT", "5000")

# The JSON file store locks in-process only; run a single worker unless the REST backend is used
if os.getenv("STORE_BACKEND", "json") == "rest":
    workers = int(os.getenv("WEB_CONCURRENCY", str(max(2, multiprocessing.cpu_count()))))
else:
    workers = 1
threads = 4
timeout = 60
graceful_timeout = 30
keepalive = 5
accesslog = "-"
errorlog = "-"
