import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

from holder_index.config import Settings
from holder_index.errors import (
    ConfigurationError,
    HolderIndexError,
    InvalidRequestError,
    RateLimitedError,
    TransactionNotFoundError,
    UnknownCollectionError,
)
from holder_index.population import IN_PROGRESS
from holder_index.service import HolderIndexService

logger = logging.getLogger(__name__)


def _int_arg(name, default):
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


def create_app(service=None, settings=None):
    settings = settings or Settings.from_env()
    service = service or HolderIndexService.from_settings(settings)

    app = Flask(__name__)
    origins = [o.strip() for o in settings.cors_origins.split(",")] if settings.cors_origins != "*" else "*"
    CORS(app, resources={r"/api/*": {"origins": origins}})
    app.config["HOLDER_SERVICE"] = service

    @app.errorhandler(UnknownCollectionError)
    def unknown_collection(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(TransactionNotFoundError)
    def transaction_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(InvalidRequestError)
    def invalid_request(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(ConfigurationError)
    def bad_configuration(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(RateLimitedError)
    def rate_limited(e):
        return jsonify({"error": str(e)}), 429

    @app.errorhandler(HolderIndexError)
    def upstream_failure(e):
        logger.error(f"Request failed: {e}")
        return jsonify({"error": str(e)}), 502

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "ok"}), 200

    @app.route("/api/init", methods=["GET"])
    def init():
        return jsonify({"message": "Initialization triggered", "collections": service.initialize()}), 200

    @app.route("/api/holders/<collection>", methods=["GET"])
    def list_holders(collection):
        try:
            page = _int_arg("page", 0)
            page_size = _int_arg("pageSize", None)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        if page < 0 or (page_size is not None and page_size <= 0):
            return jsonify({"error": "page must be >= 0 and pageSize > 0"}), 400

        wallet = request.args.get("wallet")
        logger.info(f"GET holders: collection={collection}, page={page}, pageSize={page_size}, wallet={wallet}")
        result = service.list_holders(collection, page, page_size, wallet)
        if "status" in result:
            return jsonify(result), 202
        return jsonify(result), 200

    @app.route("/api/holders/<collection>", methods=["POST"])
    def populate(collection):
        body = request.get_json(silent=True) or {}
        force_update = body.get("forceUpdate") is True
        logger.info(f"POST holders: collection={collection}, forceUpdate={force_update}")
        result = service.trigger_population(collection, force_update)
        if result["status"] == IN_PROGRESS:
            return jsonify({"message": f"{collection} population already in progress", **result}), 202
        return jsonify({"message": f"{collection} population triggered", **result}), 200

    @app.route("/api/holders/<collection>/progress", methods=["GET"])
    def progress(collection):
        return jsonify(service.get_progress(collection)), 200

    @app.route("/api/holders/<collection>/validate-burned", methods=["POST"])
    def validate_burned(collection):
        body = request.get_json(silent=True) or {}
        tx_hash = body.get("transactionHash")
        logger.info(f"POST validate-burned: collection={collection}, transactionHash={tx_hash}")
        return jsonify(service.validate_burn(collection, tx_hash)), 200

    @app.route("/api/holders/<collection>/<wallet>", methods=["GET"])
    def holder(collection, wallet):
        result = service.get_holder(collection, wallet)
        if result is None:
            return jsonify({"error": f"{wallet} holds no {collection} tokens"}), 404
        return jsonify(result), 200

    return app


def main():
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    app = create_app(settings=settings)
    if settings.warm_up_on_start:
        app.config["HOLDER_SERVICE"].initialize()
    app.run(host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
