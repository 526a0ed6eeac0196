import os

wsgi_app = "app:app"
worker_class = "gevent"
workers = int(os.getenv("WEB_CONCURRENCY", "4"))
worker_connections = 1000
timeout = 120
graceful_timeout = 30
bind = "0.0.0.0:{}".format(os.getenv("PORT", "10000"))

loglevel = os.getenv("LOG_LEVEL", "info")
accesslog = "-"
errorlog = "-"


def post_fork(server, worker):
    # Connections opened by the master before forking must not be shared with workers.
    from app import app
    from extensions import db

    with app.app_context():
        db.engine.dispose()
    server.log.info("Worker %s: database pool reset", worker.pid)
