from flask import jsonify

from .formatter import create_model_list


def register_model_routes(app):
    @app.get("/v1/models")
    def list_models():
        return jsonify(create_model_list())
