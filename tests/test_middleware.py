"""
Tests for the ambient middleware: config validation, rate limits, request
guards, request timing headers and health checks.
"""

import logging

import pytest
from flask import Blueprint, Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from npd_tracker.config import Config, ProductionConfig, validate_config
from npd_tracker.middleware.logging_config import JSONFormatter
from npd_tracker.middleware.rate_limiter import init_rate_limits
from tests.conftest import auth_headers


# ═════════════════════════════════════════════════════════════════════════════
# Config validation
# ═════════════════════════════════════════════════════════════════════════════


def _bare_app(config_cls=Config, **overrides):
    app = Flask("config_test")
    app.config.from_object(config_cls)
    app.config.update(overrides)
    return app


class TestValidateConfig:
    def test_flags_and_thresholds_are_coerced(self):
        app = _bare_app(ENABLE_CSV_IMPORT="Yes", ENABLE_EMAIL_NOTIFICATIONS="0", MAX_FILE_SIZE="2048")
        validate_config(app, production=False)
        assert app.config["ENABLE_CSV_IMPORT"] is True
        assert app.config["ENABLE_EMAIL_NOTIFICATIONS"] is False
        assert app.config["MAX_FILE_SIZE"] == 2048

    @pytest.mark.parametrize("value", ["lots", "", "-5", "0"])
    def test_bad_threshold_aborts(self, value):
        app = _bare_app(GENERAL_RATE_LIMIT_PER_MINUTE=value)
        with pytest.raises(RuntimeError, match="GENERAL_RATE_LIMIT_PER_MINUTE"):
            validate_config(app, production=False)

    def test_production_requires_secrets(self):
        app = _bare_app(ProductionConfig, SQLALCHEMY_DATABASE_URI=None, CLERK_SECRET_KEY=None,
                        CLERK_WEBHOOK_SIGNING_SECRET=None, INTERNAL_API_KEY=None,
                        ENABLE_EMAIL_NOTIFICATIONS="true", RESEND_API_KEY=None)
        with pytest.raises(RuntimeError) as exc:
            validate_config(app)
        message = str(exc.value)
        for key in ("SQLALCHEMY_DATABASE_URI", "CLERK_SECRET_KEY", "INTERNAL_API_KEY", "RESEND_API_KEY"):
            assert key in message

    def test_production_complete(self):
        app = _bare_app(ProductionConfig, SQLALCHEMY_DATABASE_URI="postgresql://db/npd",
                        SECRET_KEY="stable", CLERK_SECRET_KEY="sk", CLERK_WEBHOOK_SIGNING_SECRET="whsec_eA==",
                        INTERNAL_API_KEY="ik", ENABLE_EMAIL_NOTIFICATIONS="false")
        validate_config(app)


# ═════════════════════════════════════════════════════════════════════════════
# Rate limiting (isolated app so the shared limiter stays disabled)
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def limited_client():
    app = Flask("limit_test")
    app.config.update(GENERAL_RATE_LIMIT_PER_MINUTE=3, PDF_RATE_LIMIT_PER_MINUTE=1,
                      RATELIMIT_HEADERS_ENABLED=True, RATELIMIT_STORAGE_URI="memory://")

    for name in ("npd_bp", "export_bp", "health_bp"):
        bp = Blueprint(name, __name__, url_prefix=f"/{name}")
        bp.add_url_rule("/", name.replace("_bp", ""), lambda: {"ok": True})
        app.register_blueprint(bp)

    limiter = Limiter(key_func=get_remote_address, default_limits=[])
    limiter.init_app(app)
    init_rate_limits(app, limiter)
    return app.test_client()


class TestRateLimits:
    def test_general_limit_and_headers(self, limited_client):
        for _ in range(3):
            res = limited_client.get("/npd_bp/")
            assert res.status_code == 200
        assert res.headers["X-RateLimit-Limit"] == "3"
        assert limited_client.get("/npd_bp/").status_code == 429

    def test_heavy_limit(self, limited_client):
        assert limited_client.get("/export_bp/").status_code == 200
        assert limited_client.get("/export_bp/").status_code == 429

    def test_health_exempt(self, limited_client):
        for _ in range(10):
            assert limited_client.get("/health_bp/").status_code == 200

    def test_disabled_in_tests(self, app):
        assert app.config["RATELIMIT_ENABLED"] is False


# ═════════════════════════════════════════════════════════════════════════════
# Request guards, timing, health
# ═════════════════════════════════════════════════════════════════════════════


class TestRequestGuards:
    def test_non_json_body_rejected(self, client, users):
        res = client.post("/api/v1/npd", data="subkegiatan_id=1", content_type="text/plain",
                          headers=auth_headers(users["pptk"]))
        assert res.status_code == 415

    def test_body_too_large(self, app, client, users, monkeypatch):
        monkeypatch.setitem(app.config, "MAX_CONTENT_LENGTH", 100)
        res = client.post("/api/v1/npd", json={"title": "x" * 200}, headers=auth_headers(users["pptk"]))
        assert res.status_code == 413

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json() == {"error": "Not found", "code": "ERR_NOT_FOUND", "path": "/api/v1/nothing-here"}


class TestTimingAndHealth:
    def test_request_id_propagated(self, client, users):
        res = client.get("/api/v1/me", headers={**auth_headers(users["viewer"]), "X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, client):
        res = client.get("/api/v1/health")
        assert len(res.headers["X-Request-ID"]) == 12

    def test_health(self, client):
        assert client.get("/api/v1/health").get_json() == {"status": "ok"}
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["redis"]["status"] == "skipped"


def test_json_formatter_carries_extras():
    record = logging.LogRecord("npd_tracker.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    record.request_id = "r1"
    record.status = 201
    out = JSONFormatter().format(record)
    assert '"message": "hello world"' in out
    assert '"request_id": "r1"' in out
    assert '"status": 201' in out
