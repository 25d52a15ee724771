from flask import jsonify


def register_health_routes(app):
    @app.get("/v1/health")
    def health():
        return jsonify({"status": "ok"})

    @app.get("/ping")
    def ping():
        return "pong"
