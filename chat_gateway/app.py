import os

from flask import Flask
from flask_cors import CORS

from .proxy.config import ANTHROPIC_BASE_URL, KIMI_BASE_URL
from .proxy.logger import logger
from .proxy.routes import register_routes

CORS_ALLOW_HEADERS = [
    "Content-Type",
    "Authorization",
    "OpenAI-Organization",
    "X-Requested-With",
    "X-Request-ID",
    "Accept",
    "Accept-Version",
    "Content-Length",
    "Content-MD5",
    "Date",
    "X-Api-Version",
    "X-CSRF-Token",
]


def create_app():
    app = Flask(__name__)
    app.json.sort_keys = False
    CORS(
        app,
        supports_credentials=True,
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=["Content-Length", "Date", "X-Request-ID"],
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
        max_age=86400,
    )
    register_routes(app)
    return app


def main():
    host = os.getenv("PROXY_HOST", "0.0.0.0")
    port = int(os.getenv("PROXY_PORT", "8000"))
    logger.info(
        "Starting gateway on %s:%s (kimi=%s anthropic=%s)",
        host,
        port,
        KIMI_BASE_URL,
        ANTHROPIC_BASE_URL,
    )
    create_app().run(host=host, port=port, threaded=True)


if __name__ == "__main__":
    main()
