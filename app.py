import os
import logging
from flask import Flask, jsonify
from dotenv import load_dotenv
from datetime import timedelta
from flask_jwt_extended import JWTManager
from sqlalchemy import event
from extensions import db, migrate, limiter, csrf
from billing import billing_bp, billing_webhooks_bp
from billing.services.stripe_client import STRIPE_API_VERSION, init_stripe

load_dotenv()


def _sqlite_savepoints(engine):
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; take it over
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev'),
        JWT_SECRET_KEY=os.getenv('JWT_SECRET_KEY', os.getenv('SECRET_KEY', 'dev')),
        SQLALCHEMY_DATABASE_URI=os.getenv(
            'DATABASE_URL', f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        ),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1),

        STRIPE_SECRET_KEY=os.getenv('STRIPE_SECRET_KEY'),
        STRIPE_WEBHOOK_SECRET=os.getenv('STRIPE_WEBHOOK_SECRET'),
        STRIPE_API_VERSION=os.getenv('STRIPE_API_VERSION', STRIPE_API_VERSION),
        BILLING_WEBHOOK_TOLERANCE=int(os.getenv('BILLING_WEBHOOK_TOLERANCE', 300)),
        BILLING_UPSTREAM_TIMEOUT=float(os.getenv('BILLING_UPSTREAM_TIMEOUT', 10)),
        BILLING_UPSTREAM_MAX_RETRIES=int(os.getenv('BILLING_UPSTREAM_MAX_RETRIES', 0)),
        BILLING_PENDING_GRACE_HOURS=int(os.getenv('BILLING_PENDING_GRACE_HOURS', 48)),
        BILLING_EVENT_RETENTION_DAYS=int(os.getenv('BILLING_EVENT_RETENTION_DAYS', 30)),
        BILLING_SUCCESS_URL=os.getenv('BILLING_SUCCESS_URL', 'http://localhost:5000/billing/return'),
        BILLING_CANCEL_URL=os.getenv('BILLING_CANCEL_URL', 'http://localhost:5000/pricing'),

        RATELIMIT_HEADERS_ENABLED=True,
        LOG_LEVEL=os.getenv('LOG_LEVEL', 'INFO'),
    )
    # ───────── JWT / CSRF ─────────
    app.config.update({
        "JWT_TOKEN_LOCATION": ["cookies", "headers"],
        "JWT_COOKIE_SECURE": True,
        "JWT_COOKIE_SAMESITE": "Lax",
        "JWT_COOKIE_CSRF_PROTECT": True,
        "JWT_ACCESS_COOKIE_PATH": "/",
        "WTF_CSRF_TIME_LIMIT":3600,
        "WTF_CSRF_METHODS":['POST','PUT','PATCH','DELETE'],
        "WTF_CSRF_HEADERS": ["X-CSRFToken", "X-CSRF-Token"],
    })

    app.config.setdefault('CELERY_BROKER_URL', os.getenv('CELERY_BROKER_URL', 'redis://127.0.0.1:6379/0'))
    app.config.setdefault('CELERY_RESULT_BACKEND', os.getenv('CELERY_RESULT_BACKEND', 'redis://127.0.0.1:6379/1'))

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    csrf.init_app(app)
    # signed by the payment platform, not by a browser session
    csrf.exempt(billing_webhooks_bp)

    limiter.init_app(app)

    os.makedirs(app.instance_path, exist_ok=True)
    JWTManager(app)

    db.init_app(app)
    migrate.init_app(app, db)
    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            _sqlite_savepoints(db.engine)

    init_stripe(app)

    app.register_blueprint(billing_bp)
    app.register_blueprint(billing_webhooks_bp)

    @app.get("/healthz")
    def healthz():
        return jsonify({"success": True})

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=True)
