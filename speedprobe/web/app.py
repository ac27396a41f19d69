"""Flask application factory and HTTP routes."""

from __future__ import annotations

import logging

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import MethodNotAllowed
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..streams import drain_stream, generate_stream, resolve_download_spec

LOGGER = logging.getLogger(__name__)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def create_web_app(config: AppConfig) -> Flask:
    app = Flask(__name__)
    app.config["SPEEDPROBE"] = config

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    CORS(
        app,
        origins=config.web.cors_origins,
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.after_request
    def add_no_store_headers(response: Response) -> Response:
        for header, value in NO_STORE_HEADERS.items():
            response.headers[header] = value
        return response

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(error: MethodNotAllowed):
        response = jsonify({"message": f"Method {request.method} Not Allowed"})
        response.status_code = 405
        allowed = [m for m in (error.valid_methods or []) if m not in ("HEAD", "OPTIONS")]
        response.headers["Allow"] = ", ".join(allowed)
        return response

    @app.get("/ping")
    @app.get("/api/ping")
    def ping():
        return jsonify({"message": "pong"})

    @app.get("/download")
    @app.get("/api/download")
    def download():
        spec = resolve_download_spec(request.args.get("size"), config.server)
        LOGGER.debug("Streaming %d bytes in %d byte chunks", spec.size_bytes, spec.chunk_size_bytes)
        response = Response(
            generate_stream(spec),
            mimetype="application/octet-stream",
            direct_passthrough=True,
        )
        response.headers["Content-Length"] = str(spec.size_bytes)
        response.headers["X-Accel-Buffering"] = "no"
        return response

    @app.post("/upload")
    @app.post("/api/upload")
    def upload():
        outcome = drain_stream(request.stream, config.server.chunk_size)
        if not outcome.ok:
            return jsonify({"error": "Failed to process upload stream."}), 500
        LOGGER.debug("Upload received %d bytes", outcome.bytes_received)
        return jsonify({"message": "Upload successful", "bytesReceived": outcome.bytes_received})

    return app
